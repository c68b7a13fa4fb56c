from fastapi import (
    FastAPI,
    Depends,
    HTTPException,
    Request,
    Query,
    WebSocket,
    WebSocketDisconnect,
    File,
    UploadFile,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import OAuth2PasswordRequestForm
from fastapi.staticfiles import StaticFiles
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
import logging
import math

from . import auth
from .config import get_settings
from .database import get_session, init_db
from .errors import ValidationError, WorkflowError
from .identity import Principal, parse_role
from .models import Role
from .observability import (
    setup_logging,
    init_sentry,
    setup_metrics_middleware,
    get_health_check,
    metrics_response,
)
from .photo_utils import MAX_UPLOAD_SIZE, detect_mime_type, validate_image
from .repository import ReportRepository
from .schemas import (
    AgentSummary,
    AssignmentSchema,
    AuditPublic,
    MePublic,
    PaginatedReports,
    PaginatedSummaries,
    PhotoUploaded,
    PrioritySchema,
    ProfilePublic,
    RegisterRequest,
    ReportCreate,
    ReportPublic,
    ReportSummary,
    RoleUpdate,
    StatsPublic,
    StatusUpdateSchema,
    TransitionResponse,
)
from .storage import BlobStorage, get_blob_storage
from .websocket_manager import manager
from .workflow import UNASSIGNED, Action, WorkflowEngine, can

# Setup observability
setup_logging()
init_sentry()

logger = logging.getLogger("civicfix.api")

settings = get_settings()

app = FastAPI(title="Civic Issue Reporter API")

setup_metrics_middleware(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for dev; restrict in prod
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=list(settings.allowed_hosts) or ["*"])

# Serve locally stored photos (development fallback for S3)
if settings.storage_provider != "s3":
    _STORAGE_DIR = Path(settings.local_storage_dir)
    _STORAGE_DIR.mkdir(parents=True, exist_ok=True)
    app.mount("/storage", StaticFiles(directory=str(_STORAGE_DIR)), name="storage")


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def get_repository(session=Depends(get_session)) -> ReportRepository:
    return ReportRepository(session)


def get_engine(repository: ReportRepository = Depends(get_repository)) -> WorkflowEngine:
    return WorkflowEngine(repository)


def _page(rows, total: int, page: int, page_size: int, storage: BlobStorage, public: bool = False):
    page_model, view = (PaginatedSummaries, ReportSummary) if public else (PaginatedReports, ReportPublic)
    return page_model(
        items=[view.from_report(r, storage) for r in rows],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total else 0,
    )


async def _broadcast(what: str, coro) -> None:
    # The write is already committed; a failed notification must not fail the request.
    try:
        await coro
    except Exception as e:
        logger.error("Failed to broadcast %s: %s", what, e)


# ============================================================================
# Authentication
# ============================================================================


@app.post("/auth/login", response_model=auth.Token)
async def login(
    form_data: OAuth2PasswordRequestForm = Depends(), session=Depends(get_session)
):
    profile = await auth.authenticate_profile(form_data.username, form_data.password, session)
    if not profile:
        raise HTTPException(status_code=401, detail="Invalid username or password")
    token = auth.create_access_token(subject=profile.id, role=profile.role, email=profile.email)
    auth.role_resolver.remember(profile.id, Role(profile.role))
    return auth.Token(access_token=token, id=profile.id, role=profile.role)


@app.post("/auth/register", response_model=ProfilePublic, status_code=201)
async def register(
    body: RegisterRequest,
    principal: Optional[Principal] = Depends(auth.get_optional_principal),
    repository: ReportRepository = Depends(get_repository),
):
    """Create a profile.

    The very first profile bootstraps the system as an administrator. After
    that anyone may sign up as a reporter, while agent and administrator
    accounts can only be created by an administrator.
    """
    requested = parse_role(body.role) if body.role else Role.REPORTER
    if requested is None:
        raise ValidationError(f"Unknown role {body.role!r}")

    if await repository.count_profiles() == 0:
        requested = Role.ADMINISTRATOR
    elif requested is not Role.REPORTER:
        if principal is None:
            raise HTTPException(
                status_code=401,
                detail="Not authenticated",
                headers={"X-Auth-Reason": "Missing bearer token"},
            )
        if not can(principal.role, Action.MANAGE_USERS):
            raise HTTPException(status_code=403, detail="Insufficient privileges")

    profile = await auth.create_profile(
        repository.session,
        email=body.email,
        password=body.password,
        full_name=body.full_name,
        role=requested,
    )
    return ProfilePublic.from_profile(profile)


@app.get("/api/v1/profile/me", response_model=MePublic)
async def get_my_profile(
    principal: Principal = Depends(auth.get_cached_principal),
    repository: ReportRepository = Depends(get_repository),
):
    profile = await repository.get_profile(principal.id)
    return MePublic(
        **ProfilePublic.from_profile(profile).model_dump(),
        role_stale=principal.stale,
    )


# ============================================================================
# Service endpoints
# ============================================================================


@app.on_event("startup")
async def on_startup():
    logger.info("Starting up civic issue reporter...")
    await init_db()


@app.on_event("shutdown")
async def on_shutdown():
    """Clean up resources on shutdown."""
    logger.info("Shutting down civic issue reporter...")
    try:
        await manager.shutdown()
    except Exception as e:
        logger.error("Error during WebSocket manager shutdown: %s", e)
    await auth.role_resolver.drain()


@app.get("/health")
def health():
    """Health check endpoint."""
    return get_health_check()


@app.get("/metrics")
def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return metrics_response()


# ============================================================================
# Reports
# ============================================================================


@app.post("/api/v1/photos", response_model=PhotoUploaded, status_code=201)
async def upload_photo(
    file: UploadFile = File(...),
    principal: Optional[Principal] = Depends(auth.get_optional_principal),
    storage: BlobStorage = Depends(get_blob_storage),
):
    """Store one evidence photo and return the reference to put in `photo_urls`."""
    data = await file.read(MAX_UPLOAD_SIZE + 1)
    is_valid, error = validate_image(data, file.filename or "")
    if not is_valid:
        raise ValidationError(error)

    content_type = detect_mime_type(data)
    url = await run_in_threadpool(storage.upload_photo, data, content_type)
    logger.info(
        "Photo uploaded by %s (%d bytes, %s)",
        principal.id if principal else "anonymous", len(data), content_type,
    )
    return PhotoUploaded(url=url, content_type=content_type, size=len(data))


@app.post("/api/v1/reports", response_model=ReportPublic, status_code=201)
async def submit_report(
    payload: ReportCreate,
    principal: Optional[Principal] = Depends(auth.get_optional_principal),
    engine: WorkflowEngine = Depends(get_engine),
    storage: BlobStorage = Depends(get_blob_storage),
):
    report = await engine.submit(payload.model_dump(), principal)
    await _broadcast(
        "new report",
        manager.broadcast_new_report(
            report_id=report.id, category=report.category, description=report.description
        ),
    )
    return ReportPublic.from_report(report, storage)


@app.get("/api/v1/reports", response_model=PaginatedSummaries)
async def list_reports(
    status: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    repository: ReportRepository = Depends(get_repository),
    storage: BlobStorage = Depends(get_blob_storage),
):
    """Public dashboard listing, newest first."""
    rows, total = await repository.query(
        status=status,
        category=category,
        order="newest",
        offset=(page - 1) * page_size,
        limit=page_size,
    )
    return _page(rows, total, page, page_size, storage, public=True)


@app.get("/api/v1/reports/mine", response_model=List[ReportPublic])
async def list_my_reports(
    principal: Principal = Depends(auth.get_cached_principal),
    repository: ReportRepository = Depends(get_repository),
    storage: BlobStorage = Depends(get_blob_storage),
):
    rows, _ = await repository.query(user_id=principal.id, contact=principal.email, order="newest")
    return [ReportPublic.from_report(r, storage) for r in rows]


@app.get("/api/v1/reports/{report_id}", response_model=ReportSummary)
async def get_report(
    report_id: str,
    repository: ReportRepository = Depends(get_repository),
    storage: BlobStorage = Depends(get_blob_storage),
):
    report = await repository.get(report_id)
    return ReportSummary.from_report(report, storage)


@app.patch("/api/v1/reports/{report_id}/status", response_model=TransitionResponse)
async def update_report_status(
    report_id: str,
    body: StatusUpdateSchema,
    principal: Principal = Depends(auth.get_current_principal),
    engine: WorkflowEngine = Depends(get_engine),
    storage: BlobStorage = Depends(get_blob_storage),
):
    """Request a status change.

    Out-of-order requests come back with `applied=false` and a reason rather
    than an error (unless strict transitions are enabled).
    """
    result = await engine.request_transition(report_id, body.status, principal)
    if result.applied and result.reason == UNASSIGNED:
        await _broadcast(
            "assignment update",
            manager.broadcast_assignment(
                report_id=report_id, agent_id=None, status=result.status.value, assigned_by=principal.id
            ),
        )
    elif result.applied:
        await _broadcast(
            "status update",
            manager.broadcast_status_update(
                report_id=report_id,
                old_status=result.previous_status.value,
                new_status=result.status.value,
                updated_by=principal.id,
            ),
        )
    return TransitionResponse.from_result(result, storage)


@app.patch("/api/v1/reports/{report_id}/assign", response_model=TransitionResponse)
async def assign_report(
    report_id: str,
    body: AssignmentSchema,
    principal: Principal = Depends(auth.require_capability(Action.ASSIGN)),
    engine: WorkflowEngine = Depends(get_engine),
    storage: BlobStorage = Depends(get_blob_storage),
):
    """Assign an agent, or pass `agent_id: null` to unassign."""
    result = await engine.assign_agent(report_id, body.agent_id, principal)
    if result.applied:
        await _broadcast(
            "assignment update",
            manager.broadcast_assignment(
                report_id=report_id,
                agent_id=result.report.agent_id,
                status=result.status.value,
                assigned_by=principal.id,
            ),
        )
    return TransitionResponse.from_result(result, storage)


@app.patch("/api/v1/reports/{report_id}/priority", response_model=ReportPublic)
async def update_report_priority(
    report_id: str,
    body: PrioritySchema,
    principal: Principal = Depends(auth.require_capability(Action.SET_PRIORITY)),
    engine: WorkflowEngine = Depends(get_engine),
    storage: BlobStorage = Depends(get_blob_storage),
):
    report = await engine.set_priority(report_id, body.priority, principal)
    await _broadcast(
        "priority update",
        manager.broadcast_priority(report_id=report.id, priority=report.priority, updated_by=principal.id),
    )
    return ReportPublic.from_report(report, storage)


@app.get("/api/v1/reports/{report_id}/audits", response_model=List[AuditPublic])
async def list_report_audits(
    report_id: str,
    principal: Principal = Depends(auth.require_capability(Action.VIEW_ALL, authoritative=False)),
    repository: ReportRepository = Depends(get_repository),
):
    """Status and assignment history for a report. Admin-only."""
    await repository.get(report_id)
    rows = await repository.audits(report_id)
    return [AuditPublic(**r.model_dump()) for r in rows]


@app.get("/api/v1/admin/reports", response_model=PaginatedReports)
async def list_admin_reports(
    status: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(auth.require_capability(Action.VIEW_ALL, authoritative=False)),
    repository: ReportRepository = Depends(get_repository),
    storage: BlobStorage = Depends(get_blob_storage),
):
    """Triage list: grouped by category, most urgent first, then oldest first."""
    rows, total = await repository.query(
        status=status,
        category=category,
        order="triage",
        offset=(page - 1) * page_size,
        limit=page_size,
    )
    return _page(rows, total, page, page_size, storage)


@app.get("/api/v1/agent/reports", response_model=List[ReportPublic])
async def list_agent_reports(
    status: Optional[str] = Query(None),
    principal: Principal = Depends(auth.require_capability(Action.ACCEPT, authoritative=False)),
    repository: ReportRepository = Depends(get_repository),
    storage: BlobStorage = Depends(get_blob_storage),
):
    """Reports assigned to the calling agent, most urgent first."""
    rows, _ = await repository.query(agent_id=principal.id, status=status, order="queue")
    return [ReportPublic.from_report(r, storage) for r in rows]


@app.get("/api/v1/stats", response_model=StatsPublic)
async def get_stats(repository: ReportRepository = Depends(get_repository)):
    return StatsPublic(**await repository.stats())


# ============================================================================
# Profiles
# ============================================================================


@app.get("/api/v1/agents", response_model=List[AgentSummary])
async def list_agents(
    principal: Principal = Depends(auth.require_capability(Action.ASSIGN, authoritative=False)),
    repository: ReportRepository = Depends(get_repository),
):
    """Agents available for assignment, with their open workload."""
    agents = await repository.list_profiles(role=Role.AGENT.value)
    open_counts = await repository.open_counts_by_agent()
    return [
        AgentSummary(
            id=a.id,
            email=a.email,
            full_name=a.full_name,
            open_reports=open_counts.get(a.id, 0),
        )
        for a in agents
    ]


@app.get("/api/v1/admin/profiles", response_model=List[ProfilePublic])
async def list_profiles(
    role: Optional[str] = Query(None),
    principal: Principal = Depends(auth.require_capability(Action.MANAGE_USERS, authoritative=False)),
    repository: ReportRepository = Depends(get_repository),
):
    return [ProfilePublic.from_profile(p) for p in await repository.list_profiles(role=role)]


@app.patch("/api/v1/admin/profiles/{profile_id}/role", response_model=ProfilePublic)
async def update_profile_role(
    profile_id: str,
    body: RoleUpdate,
    principal: Principal = Depends(auth.require_capability(Action.MANAGE_USERS)),
    repository: ReportRepository = Depends(get_repository),
):
    role = parse_role(body.role)
    if role is None:
        raise ValidationError(f"Unknown role {body.role!r}")
    if profile_id == principal.id and role is not Role.ADMINISTRATOR:
        raise ValidationError("Administrators cannot demote themselves")

    profile = await repository.get_profile(profile_id)
    if profile.role != role.value:
        profile.role = role.value
        profile.updated_at = datetime.now(timezone.utc)
        profile = await repository.save_profile(profile)
        logger.info("Profile %s role set to %s by %s", profile.id, role.value, principal.id)
    auth.role_resolver.remember(profile.id, role)
    return ProfilePublic.from_profile(profile)


# ============================================================================
# Change notifications
# ============================================================================


@app.websocket("/ws/reports")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    """
    WebSocket endpoint for live report updates.

    Requires JWT token as query parameter for authentication.
    """
    if not token:
        await websocket.close(code=4001, reason="Missing authentication token")
        return

    try:
        payload = auth.decode_access_token(token)
    except HTTPException as e:
        logger.error("WebSocket authentication failed: %s", e.detail)
        await websocket.close(code=4001, reason="Invalid authentication token")
        return

    resolved = await auth.role_resolver.best_effort(payload.sub, fallback=parse_role(payload.role))
    if resolved is None:
        await websocket.close(code=4001, reason="Unknown user")
        return
    role, _ = resolved

    await manager.connect(websocket, payload.sub, role.value)
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.error("WebSocket error: %s", e)
        manager.disconnect(websocket)
