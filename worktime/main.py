import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .config import settings
from .db import Base, engine
from .errors import StoreRequestError
from .logging import setup_logging, RequestIdMiddleware
from .models import models  # noqa: F401  registers tables on Base.metadata
from .routes.timesheets import router as timesheets_router

logger = structlog.get_logger(__name__)


async def _store_error_handler(request: Request, exc: StoreRequestError):
    logger.warning("store_request_failed", operation=exc.operation, status_code=exc.status_code, path=request.url.path)
    return JSONResponse(
        status_code=502,
        content={"detail": {"code": exc.code, "message": exc.message, "upstream_status": exc.status_code}},
    )


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(StoreRequestError, _store_error_handler)

    # Routers
    app.include_router(timesheets_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok", "environment": settings.environment}

    @app.on_event("startup")
    def _startup():
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            logger.info("database_ready", url=engine.url.render_as_string(hide_password=True))

    return app


app = create_app()
