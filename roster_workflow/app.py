from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from roster_workflow.domain.errors import (
    ConcurrentModification,
    FileTooLarge,
    IngestionError,
    IngestionTimeout,
    InvalidTransition,
    NoMatchingSheet,
    NotFoundError,
    PermissionDenied,
    ReferentialIntegrityError,
    RosterWorkflowError,
    StorageError,
    WorkflowValidationError,
)
from roster_workflow.infrastructure import WebhookChangeNotifier, configure_change_notifier
from roster_workflow.routes import batches, rosters, workers
from roster_workflow.settings import get_settings
from roster_workflow.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

# first match wins, so subclasses come before their bases
STATUS_CODES: list[tuple[type[RosterWorkflowError], int]] = [
    (PermissionDenied, 403),
    (NotFoundError, 404),
    (ConcurrentModification, 409),
    (InvalidTransition, 409),
    (ReferentialIntegrityError, 409),
    (FileTooLarge, 413),
    (IngestionTimeout, 504),
    (IngestionError, 422),
    (WorkflowValidationError, 400),
]


def status_for(exc: RosterWorkflowError) -> int:
    if isinstance(exc, StorageError):
        return 503 if exc.retryable else 500
    for error_type, status_code in STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def handle_workflow_error(request: Request, exc: RosterWorkflowError) -> JSONResponse:
    status_code = status_for(exc)
    body: dict[str, object] = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, NoMatchingSheet):
        body["missing"] = exc.missing
    log = logger.error if status_code >= 500 else logger.info
    log("request failed", extra={"path": request.url.path, "code": exc.code, "status_code": status_code})
    return JSONResponse(status_code=status_code, content=body)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    app = FastAPI(title="Roster Workflow API", version="0.1.0")

    if settings.change_webhook_url:
        configure_change_notifier(WebhookChangeNotifier(settings.change_webhook_url))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RosterWorkflowError, handle_workflow_error)

    app.include_router(batches.router, prefix="/api")
    app.include_router(rosters.router, prefix="/api")
    app.include_router(workers.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Roster Workflow API",
                "docs": "/docs",
                "template": "/api/rosters/template",
            }
        )

    return app


app = create_app()
