from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile

from .config import AppSettings, load_settings
from .drive import DriveClient, drive_evidence
from .errors import (
    ActivationTimeoutError,
    InvalidRequestError,
    OperationCancelledError,
    ProcessingFailedError,
    SherlockError,
)
from .heuristics import group_heuristics
from .media import is_image, is_video, memory_evidence
from .orchestrator import AnalysisOrchestrator
from .projects import ProjectStore
from .schemas import AnalysisRequest, AnalyzeRequestBody, DriveAssetBody, HeuristicCriterion


ERROR_STATUS = {
    InvalidRequestError: 400,
    ProcessingFailedError: 422,
    OperationCancelledError: 499,
    ActivationTimeoutError: 504,
}


def http_error(exc: SherlockError) -> HTTPException:
    status = 502
    for kind, code in ERROR_STATUS.items():
        if isinstance(exc, kind):
            status = code
            break
    return HTTPException(status_code=status, detail=exc.to_dict())


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> AnalysisOrchestrator:
    return request.app.state.orchestrator


def get_projects(request: Request) -> ProjectStore:
    return request.app.state.projects


def get_drive(request: Request) -> DriveClient:
    return request.app.state.drive


def validate_upload(file: UploadFile) -> None:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Filename required.")
    raw_name = file.filename
    safe_name = Path(raw_name).name
    if safe_name != raw_name or safe_name in (".", ".."):
        raise HTTPException(status_code=400, detail="Invalid filename.")
    content_type = file.content_type or ""
    if not (is_image(content_type) or is_video(content_type)):
        raise HTTPException(status_code=400, detail="Only images or videos are allowed.")


def system_prompt_for(projects: ProjectStore, name: Optional[str]) -> Optional[str]:
    if name:
        return projects.load(name).load_system_prompt() or None
    try:
        return projects.resolve().load_system_prompt() or None
    except InvalidRequestError:
        return None


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.get("/api/heuristics")
async def list_heuristics(
    project: Optional[str] = Query(None),
    projects: ProjectStore = Depends(get_projects),
):
    try:
        criteria = projects.resolve(project).load_heuristics()
    except SherlockError as exc:
        raise http_error(exc) from exc
    return {"groups": group_heuristics(criteria)}


@router.post("/api/assets")
async def prepare_asset(
    file: UploadFile = File(...),
    source_id: Optional[str] = Form(None),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
):
    validate_upload(file)
    data = await file.read()
    evidence = memory_evidence(data, file.content_type or "", Path(file.filename).name, source_id=source_id)
    try:
        prepared = await orchestrator.prepare_asset(evidence)
    except SherlockError as exc:
        raise http_error(exc) from exc
    return prepared.to_public()


@router.post("/api/assets/drive")
async def prepare_drive_asset(
    payload: DriveAssetBody,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
    drive: DriveClient = Depends(get_drive),
):
    try:
        evidence = drive_evidence(payload.file, payload.accessToken, drive)
        prepared = await orchestrator.prepare_asset(evidence)
    except SherlockError as exc:
        raise http_error(exc) from exc
    return prepared.to_public()


@router.post("/api/analyze")
async def analyze(
    payload: AnalyzeRequestBody,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
    projects: ProjectStore = Depends(get_projects),
):
    try:
        request = AnalysisRequest(
            criteria=[HeuristicCriterion.from_catalog(item) for item in payload.heuristics],
            evidence=[part.to_prepared() for part in payload.mediaParts],
            context_text=payload.context or "",
        )
        response = await orchestrator.analyze(request, system_prompt=system_prompt_for(projects, payload.project))
    except SherlockError as exc:
        raise http_error(exc) from exc
    return response.to_public()


def create_app(
    settings: AppSettings,
    *,
    orchestrator: Optional[AnalysisOrchestrator] = None,
    projects: Optional[ProjectStore] = None,
    drive: Optional[DriveClient] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            await app.state.orchestrator.close()
            await app.state.drive.close()

    app = FastAPI(title="Sherlock UX Heuristics", lifespan=lifespan)
    app.state.settings = settings
    app.state.orchestrator = orchestrator or AnalysisOrchestrator(settings)
    app.state.projects = projects or ProjectStore(Path(settings.projects_dir), settings.default_project)
    app.state.drive = drive or DriveClient(settings.drive_api_base, timeout=settings.upload_timeout_s)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    try:
        uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
    except KeyboardInterrupt:
        pass
