import logging
from typing import Optional
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from backup_server.api.routers import uploads
from backup_server.api import auth
from backup_server.core.config import Settings, settings as default_settings
from backup_server.core.exceptions import BackupServerError
from backup_server.database import create_db_engine, create_session_factory
from backup_server.models import Base
from backup_server.services.backup_service import BackupService
from backup_server.services.cleanup_service import setup_cleanup_tasks

logger = logging.getLogger("backup_server")

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application around its own settings, database and session table.
    """
    settings = settings or default_settings
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    app = FastAPI(title=settings.PROJECT_NAME)
    engine = create_db_engine(settings.DATABASE_URL)
    app.state.settings = settings
    app.state.backup_service = BackupService(settings, create_session_factory(engine))

    # Include routers
    app.include_router(uploads.router, prefix=settings.API_PREFIX)
    app.include_router(auth.router, prefix="/auth")

    @app.on_event("startup")
    async def prepare_storage():
        settings.ensure_directories()
        Base.metadata.create_all(bind=engine)

    @app.exception_handler(BackupServerError)
    async def backup_error_handler(request: Request, exc: BackupServerError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "detail": exc.details, "retryable": exc.retryable},
        )

    # Set up background cleanup tasks
    setup_cleanup_tasks(app)
    return app

# Create FastAPI application
app = create_app()

if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8005, reload=True)
