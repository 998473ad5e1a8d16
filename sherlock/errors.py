from typing import Any, Dict, Optional


class SherlockError(Exception):
    """Base class for every failure the analysis core surfaces to callers."""

    kind = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": str(self)}


class InvalidRequestError(SherlockError):
    kind = "invalid_request"


class UploadError(SherlockError):
    kind = "upload_failed"

    def __init__(self, phase: str, status_code: Optional[int], body: str = "", message: Optional[str] = None):
        self.phase = phase
        self.status_code = status_code
        self.body = body or ""
        if message is None:
            status = status_code if status_code is not None else "no response"
            message = f"Upload failed during {phase} ({status})"
            if self.body:
                message = f"{message}: {self.body}"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"phase": self.phase, "status_code": self.status_code, "body": self.body})
        return data


class ConflictError(UploadError):
    kind = "conflict"

    def __init__(self, resource_name: Optional[str], body: str = ""):
        self.resource_name = resource_name
        super().__init__(
            "initiate",
            409,
            body,
            message=f"Remote file name already taken: {resource_name}",
        )


class ProcessingFailedError(SherlockError):
    kind = "processing_failed"

    def __init__(self, resource_name: str):
        self.resource_name = resource_name
        super().__init__(f"Remote processing failed for {resource_name}")


class ActivationTimeoutError(SherlockError, TimeoutError):
    kind = "timeout"

    def __init__(self, resource_name: str, waited_s: float):
        self.resource_name = resource_name
        self.waited_s = waited_s
        super().__init__(f"{resource_name} was not ready after {waited_s:.0f}s")


class GenerationError(SherlockError):
    kind = "generation_failed"

    def __init__(self, status_code: Optional[int], body: str = ""):
        self.status_code = status_code
        self.body = body or ""
        status = status_code if status_code is not None else "no response"
        message = f"Generation request failed ({status})"
        if self.body:
            message = f"{message}: {self.body}"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"status_code": self.status_code, "body": self.body})
        return data


class OperationCancelledError(SherlockError):
    kind = "cancelled"
