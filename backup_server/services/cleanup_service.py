import asyncio
import logging
from fastapi import FastAPI
from backup_server.services.backup_service import BackupService

logger = logging.getLogger("cleanup_service")

async def run_expiry_sweep(backup_service: BackupService) -> int:
    """
    Expire idle upload sessions once and return how many were dropped.
    """
    logger.info("Running cleanup task for idle upload sessions")
    expired = await backup_service.expire_idle_sessions()
    if expired:
        logger.info(f"Expired {expired} idle upload session(s)")
    return expired

async def cleanup_idle_sessions(backup_service: BackupService, interval_seconds: int):
    """
    Periodically drop abandoned upload sessions and their chunks.
    Abandoned sessions are ones that haven't received a chunk for the idle window.
    """
    while True:
        try:
            await run_expiry_sweep(backup_service)
        except Exception as e:
            logger.error(f"Error in cleanup task: {str(e)}")

        # Wait for next run
        await asyncio.sleep(interval_seconds)

def setup_cleanup_tasks(app: FastAPI):
    """
    Set up background tasks for the FastAPI application.
    """
    @app.on_event("startup")
    async def start_cleanup_task():
        settings = app.state.settings
        app.state.cleanup_task = asyncio.create_task(
            cleanup_idle_sessions(app.state.backup_service, settings.CLEANUP_INTERVAL_SECONDS)
        )

    @app.on_event("shutdown")
    async def stop_cleanup_task():
        task = getattr(app.state, "cleanup_task", None)
        if task is not None:
            task.cancel()
