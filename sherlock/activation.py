import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from .errors import ActivationTimeoutError, InvalidRequestError, OperationCancelledError, ProcessingFailedError
from .gemini import GeminiFilesClient
from .schemas import RemoteAssetHandle


logger = logging.getLogger("uvicorn.error")

StatusCallback = Optional[Callable[[str], None]]


def emit_status(on_status: StatusCallback, message: str) -> None:
    if on_status is None:
        return
    try:
        on_status(message)
    except Exception as exc:
        logger.debug("Status callback failed: %s", exc)


def check_stop(stop_event: Optional[asyncio.Event], what: str) -> None:
    if stop_event is not None and stop_event.is_set():
        raise OperationCancelledError(f"Cancelled while {what}")


class ActivationWaiter:
    """Polls a remote file until it is ACTIVE, FAILED, or the budget runs out.

    PROCESSING -> ACTIVE   returns the handle
    PROCESSING -> FAILED   ProcessingFailedError
    PROCESSING -> (budget) ActivationTimeoutError

    Each poll is a plain GET; the stop event is checked before every one of
    them, so a cancelled caller is released within one interval.
    """

    def __init__(
        self,
        files_client: GeminiFilesClient,
        poll_interval_s: float = 3.0,
        max_wait_s: float = 180.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.files = files_client
        self.poll_interval_s = poll_interval_s
        self.max_wait_s = max_wait_s
        self._clock = clock
        self._sleep = sleep

    async def await_active(
        self,
        resource_name: str,
        max_wait_s: Optional[float] = None,
        *,
        stop_event: Optional[asyncio.Event] = None,
        on_status: StatusCallback = None,
    ) -> RemoteAssetHandle:
        budget = self.max_wait_s if max_wait_s is None else max_wait_s
        started = self._clock()
        deadline = started + budget
        checks = 0
        while True:
            check_stop(stop_event, f"waiting for {resource_name}")
            descriptor = await self.files.get_file(resource_name)
            checks += 1
            if descriptor is None:
                raise InvalidRequestError(f"Remote file {resource_name} does not exist")
            handle = RemoteAssetHandle.from_api(descriptor)
            if handle.state == "ACTIVE":
                logger.info("%s active after %d status check(s)", resource_name, checks)
                return handle
            if handle.state == "FAILED":
                raise ProcessingFailedError(resource_name)
            now = self._clock()
            if now >= deadline:
                raise ActivationTimeoutError(resource_name, now - started)
            if checks == 1:
                emit_status(on_status, f"Processing {handle.display_name or resource_name}")
            await self._sleep(min(self.poll_interval_s, deadline - now))
