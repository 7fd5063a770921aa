"""
EnvGuard: FastAPI Server
REST API over the environment registry, variable store and audit trail.
Run: python -m envguard.api.server
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from sqlalchemy import text

from envguard import __version__
from envguard import errors
from envguard.api.routes import router
from envguard.audit.audit_recorder import AuditRecorder
from envguard.auth.identity import resolve_bearer_token
from envguard.config.settings import Settings, settings
from envguard.db.base import Base
from envguard.db import models  # noqa: F401
from envguard.db.engine import create_engine, create_session_factory, dispose_engine
from envguard.environments.environment_registry import EnvironmentRegistry
from envguard.utils.crypto import Cipher
from envguard.variables.variable_store import VariableStore

logger = logging.getLogger(__name__)

# Most specific first; AuditWriteError falls through to PersistenceError.
_ERROR_STATUS = [
    (errors.NotFoundError, 404),
    (errors.ValidationError, 400),
    (errors.DuplicateNameError, 409),
    (errors.ConflictError, 409),
    (errors.DecryptionError, 403),
    (errors.PersistenceError, 500),
]

_PUBLIC_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}


def _status_for(exc: errors.EnvGuardError) -> int:
    for cls, status in _ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


class AuthMiddleware(BaseHTTPMiddleware):
    """Attach the caller identity for every non-public request, or reject with 401."""

    def __init__(self, app, app_settings: Settings):
        super().__init__(app)
        self._settings = app_settings

    async def dispatch(self, request: Request, call_next):
        path = request.url.path.rstrip("/") or "/"
        if request.method == "OPTIONS" or path in _PUBLIC_PATHS or path.startswith("/docs"):
            return await call_next(request)

        caller = resolve_bearer_token(request.headers.get("authorization", ""), self._settings)
        if caller is None:
            return JSONResponse(status_code=401, content={"detail": "Unauthorized"})
        request.state.user = caller
        return await call_next(request)


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """Build the application. Storage and the cipher are created in the lifespan."""
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting EnvGuard ({app_settings.environment})")
        cipher = Cipher.from_settings(app_settings)
        if not app_settings.api_token:
            if app_settings.is_dev:
                logger.warning("API_TOKEN not set: accepting any bearer token (dev only)")
            else:
                logger.error("API_TOKEN not set: all API requests will be rejected")
        engine = create_engine(app_settings.database_url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        factory = create_session_factory(engine)

        recorder = AuditRecorder(
            factory,
            default_limit=app_settings.audit_default_limit,
            max_limit=app_settings.audit_max_limit,
        )
        app.state.session_factory = factory
        app.state.recorder = recorder
        app.state.registry = EnvironmentRegistry(factory, recorder)
        app.state.store = VariableStore(
            factory, cipher, recorder, max_attempts=app_settings.write_max_attempts,
        )
        logger.info("EnvGuard ready")
        try:
            yield
        finally:
            await dispose_engine(engine)

    app = FastAPI(
        title="EnvGuard",
        description="Per-environment configuration and secret store with an audit trail.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    raw_origins = app_settings.cors_allowed_origins
    origins = ["*"] if raw_origins.strip() == "*" else [o.strip() for o in raw_origins.split(",") if o.strip()]
    app.add_middleware(AuthMiddleware, app_settings=app_settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(errors.EnvGuardError)
    async def envguard_error_handler(request: Request, exc: errors.EnvGuardError):
        status = _status_for(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    @app.get("/health", tags=["System"])
    async def health():
        """Health check: probes the database."""
        checks = {}
        overall = "ok"
        try:
            async with app.state.session_factory() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = {"status": "ok"}
        except Exception as e:
            checks["database"] = {"status": "error", "detail": type(e).__name__}
            overall = "degraded"
        return {
            "status": overall,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
        }

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
