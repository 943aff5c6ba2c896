import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from partnership_sync.config import get_settings
from partnership_sync.errors import PanelNotOpenError, ValidationFailure, WriteFailure
from partnership_sync.logging_utils import setup_logging, RequestLoggingMiddleware, log_panel_action
from partnership_sync.metrics import get_metrics, get_metrics_content_type
from partnership_sync.panel import PanelRegistry
from partnership_sync.remote import HttpPartnershipService, PartnershipService
from partnership_sync.schemas import (
    ErrorResponse,
    HealthResponse,
    OpenPanelRequest,
    PanelSnapshot,
    ProposeMeetingRequest,
    SendMessageRequest,
    WriteFailureResponse,
)


logger = logging.getLogger(__name__)

router = APIRouter()


def get_registry(request: Request) -> PanelRegistry:
    return request.app.state.registry


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the Remote Partnership Service
    base URL is configured. Otherwise returns 503 (Service Unavailable).
    """
    if not get_settings().API_BASE_URL:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="API_BASE_URL not configured"
        )
    return HealthResponse(status="ready")


# =============================================================================
# Panel Routes
# =============================================================================

@router.post(
    "/panels/{partnership_id}",
    response_model=PanelSnapshot,
    responses={422: {"description": "Validation error"}},
)
async def open_panel(
    partnership_id: str,
    body: OpenPanelRequest,
    request: Request,
    registry: PanelRegistry = Depends(get_registry),
) -> PanelSnapshot:
    """
    Open (or re-attach to) the panel for a partnership and start polling.

    Waits for the first refresh of both collections so the returned snapshot
    already holds data, or the error flags if the first fetch failed.
    """
    logger.info(f"POST /panels/{partnership_id}: viewer={body.viewer_user_id}")
    panel = await registry.open(partnership_id, body.viewer_user_id)
    await panel.orchestrator.settle()
    log_panel_action(request, partnership_id, "open", "ok")
    return panel.snapshot()


@router.get(
    "/panels/{partnership_id}",
    response_model=PanelSnapshot,
    responses={404: {"model": ErrorResponse, "description": "Panel not open"}},
)
async def get_panel(
    partnership_id: str,
    request: Request,
    registry: PanelRegistry = Depends(get_registry),
) -> PanelSnapshot:
    """Current messages, meetings (with countdowns) and per-collection flags."""
    panel = registry.get(partnership_id)
    log_panel_action(request, partnership_id, "snapshot", "ok")
    return panel.snapshot()


@router.delete(
    "/panels/{partnership_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse, "description": "Panel not open"}},
)
async def close_panel(
    partnership_id: str,
    request: Request,
    registry: PanelRegistry = Depends(get_registry),
) -> Response:
    """Stop polling and every countdown for the partnership."""
    logger.info(f"DELETE /panels/{partnership_id}")
    await registry.close(partnership_id)
    log_panel_action(request, partnership_id, "close", "ok")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/panels/{partnership_id}/messages",
    response_model=PanelSnapshot,
    status_code=status.HTTP_201_CREATED,
    responses={
        404: {"model": ErrorResponse, "description": "Panel not open"},
        422: {"model": ErrorResponse, "description": "Empty message"},
        502: {"model": WriteFailureResponse, "description": "Remote service rejected the send"},
    },
)
async def send_message(
    partnership_id: str,
    body: SendMessageRequest,
    request: Request,
    registry: PanelRegistry = Depends(get_registry),
) -> PanelSnapshot:
    """
    Send a message, then return the snapshot after the follow-up refresh.

    On failure the typed text is echoed back under ``attempted.text``.
    """
    panel = registry.get(partnership_id)
    await panel.send(body.text)
    await panel.orchestrator.settle()
    log_panel_action(request, partnership_id, "send", "ok")
    return panel.snapshot()


@router.post(
    "/panels/{partnership_id}/meetings",
    response_model=PanelSnapshot,
    status_code=status.HTTP_201_CREATED,
    responses={
        404: {"model": ErrorResponse, "description": "Panel not open"},
        422: {"model": ErrorResponse, "description": "Meeting time not in the future"},
        502: {"model": WriteFailureResponse, "description": "Remote service rejected the proposal"},
    },
)
async def propose_meeting(
    partnership_id: str,
    body: ProposeMeetingRequest,
    request: Request,
    registry: PanelRegistry = Depends(get_registry),
) -> PanelSnapshot:
    """Propose a meeting; it appears as ``pending`` for both parties."""
    panel = registry.get(partnership_id)
    await panel.propose(body.scheduled_time)
    await panel.orchestrator.settle()
    log_panel_action(request, partnership_id, "propose", "ok")
    return panel.snapshot()


@router.post(
    "/panels/{partnership_id}/meetings/{meeting_id}/accept",
    response_model=PanelSnapshot,
    responses={
        404: {"model": ErrorResponse, "description": "Panel not open"},
        422: {"model": ErrorResponse, "description": "Organizer cannot accept"},
        502: {"model": WriteFailureResponse, "description": "Remote service rejected the accept"},
    },
)
async def accept_meeting(
    partnership_id: str,
    meeting_id: str,
    request: Request,
    registry: PanelRegistry = Depends(get_registry),
) -> PanelSnapshot:
    """Accept a pending meeting. Accepting twice is not an error."""
    panel = registry.get(partnership_id)
    await panel.accept(meeting_id)
    await panel.orchestrator.settle()
    log_panel_action(request, partnership_id, "accept", "ok")
    return panel.snapshot()


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics, including:
    - http_requests_total / request_latency_seconds: host API traffic
    - panel_refresh_total / panel_refresh_skipped_total: polling outcomes
    - panel_write_total: send/propose/accept outcomes
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Error Mapping
# =============================================================================

def _partnership_id(request: Request) -> str:
    return request.path_params.get("partnership_id", "")


def _action(request: Request) -> str:
    path = request.url.path
    if path.endswith("/accept"):
        return "accept"
    if path.endswith("/meetings"):
        return "propose"
    if path.endswith("/messages"):
        return "send"
    return "snapshot" if request.method == "GET" else request.method.lower()


async def panel_not_open_handler(request: Request, exc: PanelNotOpenError) -> JSONResponse:
    log_panel_action(request, _partnership_id(request), _action(request), "not_open")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=ErrorResponse(detail=str(exc)).model_dump(),
    )


async def validation_failure_handler(request: Request, exc: ValidationFailure) -> JSONResponse:
    logger.info(f"Rejected {_action(request)}: {exc.message}")
    log_panel_action(request, _partnership_id(request), _action(request), "invalid")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(detail=exc.message).model_dump(),
    )


async def write_failure_handler(request: Request, exc: WriteFailure) -> JSONResponse:
    log_panel_action(request, _partnership_id(request), exc.action, "write_failed")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content=WriteFailureResponse(
            detail=exc.message,
            action=exc.action,
            attempted=exc.attempted,
        ).model_dump(),
    )


# =============================================================================
# Application Factory
# =============================================================================

def create_app(service: Optional[PartnershipService] = None) -> FastAPI:
    """
    Build the panel host application.

    Args:
        service: Remote Partnership Service client; defaults to the HTTP
            client configured from settings
    """
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: create the panel registry
        - Shutdown: close every open panel so no timer outlives the app
        """
        app.state.registry = PanelRegistry(
            service or HttpPartnershipService.from_settings(settings),
            settings=settings,
        )
        yield
        await app.state.registry.close_all()

    app = FastAPI(
        title="Partnership Panel API",
        description="Live message thread and meeting scheduling for CSR partnerships",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(PanelNotOpenError, panel_not_open_handler)
    app.add_exception_handler(ValidationFailure, validation_failure_handler)
    app.add_exception_handler(WriteFailure, write_failure_handler)
    app.include_router(router)
    return app


app = create_app()
