"""Nexus Compliance Engine service entry point.

Initializes the FastAPI application with:
- structlog logging configured from settings
- Primary PostgreSQL database and the unit-of-work store handle
- HTTP control evaluator for AI-assisted assessments
- One exception handler mapping ComplianceEngineError to JSON error bodies
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from nexus_compliance_engine.adapters.evaluator import HttpControlEvaluator
from nexus_compliance_engine.adapters.store import SqlAlchemyComplianceStore
from nexus_compliance_engine.api.router import router
from nexus_compliance_engine.api.schemas import HealthResponse
from nexus_compliance_engine.core.interfaces import IComplianceStore, IControlEvaluator
from nexus_compliance_engine.database import close_database, init_database
from nexus_compliance_engine.errors import ComplianceEngineError
from nexus_compliance_engine.observability import configure_logging, get_logger
from nexus_compliance_engine.settings import Settings

logger = get_logger(__name__)


async def compliance_error_handler(request: Request, exc: ComplianceEngineError) -> JSONResponse:
    """Translate a typed engine error into its HTTP status and JSON body.

    Args:
        request: The failed request.
        exc: The raised engine error.

    Returns:
        JSONResponse with error_code, message and details.
    """
    log = logger.error if exc.http_status >= 500 else logger.info
    log(
        "Request failed",
        path=request.url.path,
        error_code=exc.error_code,
        status_code=exc.http_status,
        error=exc.message,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def create_app(
    settings: Settings | None = None,
    store: IComplianceStore | None = None,
    evaluator: IControlEvaluator | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    A store or evaluator passed in is used as-is and the lifespan leaves it
    alone; otherwise both are created from settings at startup.

    Args:
        settings: Service settings; read from the environment when omitted.
        store: Optional pre-built store handle.
        evaluator: Optional pre-built control evaluator.

    Returns:
        The configured FastAPI application.
    """
    settings = settings or Settings()
    owns_database = store is None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage application startup and shutdown lifecycle.

        Args:
            app: The FastAPI application instance.

        Yields:
            None
        """
        configure_logging(level=settings.log_level, log_format=settings.log_format)

        if owns_database:
            logger.info("Initializing primary database", service=settings.service_name)
            session_factory = init_database(
                settings.database_url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
            )
            app.state.store = SqlAlchemyComplianceStore(session_factory)

        if isinstance(app.state.evaluator, HttpControlEvaluator) and settings.ai_enabled:
            if not await app.state.evaluator.health_check():
                logger.warning(
                    "Control evaluator is not reachable at startup; AI-assisted controls will be not_assessed",
                    evaluator_url=settings.evaluator_url,
                )

        logger.info(
            "Compliance engine startup complete",
            ai_enabled=settings.ai_enabled,
            ai_model=settings.ai_model,
        )

        yield

        logger.info("Shutting down compliance engine")
        if owns_database:
            await close_database()
        logger.info("Compliance engine shutdown complete")

    app = FastAPI(title=settings.service_name, version=settings.version, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.evaluator = evaluator or HttpControlEvaluator(
        base_url=settings.evaluator_url,
        api_key=settings.ai_api_key,
        default_model=settings.ai_model,
        timeout_seconds=settings.control_eval_timeout_seconds,
    )
    app.add_exception_handler(ComplianceEngineError, compliance_error_handler)  # type: ignore[arg-type]
    app.include_router(router, prefix="/api/v1/compliance")

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        return HealthResponse(status="healthy", service=settings.service_name, version=settings.version)

    return app


app: FastAPI = create_app()
