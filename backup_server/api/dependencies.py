from fastapi import Request
from backup_server.services.backup_service import BackupService

# Dependency to get the BackupService owned by the running application
def get_backup_service(request: Request) -> BackupService:
    """
    Dependency to get the BackupService instance created at application startup.
    """
    return request.app.state.backup_service
