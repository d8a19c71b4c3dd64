import logging
import shutil
from pathlib import Path
from backup_server.crud import BackupGateway
from backup_server.utils.file_utils import version_directory

logger = logging.getLogger("retention")

def cleanup_old_backups(gateway: BackupGateway, storage_dir: Path, client_id: str,
                        backup_name: str, max_backups: int) -> int:
    """
    Keep only the newest ``max_backups`` completed versions of a backup entry.

    Older versions lose both their files on disk and their records. Returns
    the number of deleted versions.
    """
    if max_backups <= 0:
        return 0

    backups = gateway.list_completed_backups(client_id, backup_name)
    backups_to_delete = backups[max_backups:]

    for backup in backups_to_delete:
        logger.info(f"Deleting old backup: {backup_name} v{backup.version} (id: {backup.id})")
        backup_dir = version_directory(storage_dir, client_id, backup_name, backup.version)
        try:
            shutil.rmtree(backup_dir)
            logger.info(f"Deleted directory: {backup_dir}")
        except FileNotFoundError:
            logger.warning(f"Backup directory already gone: {backup_dir}")
        except OSError as e:
            logger.error(f"Failed to delete {backup_dir}: {str(e)}")

        gateway.delete_backup(backup.id)
        logger.info(f"Deleted backup record: {backup.id}")

    if backups_to_delete:
        logger.info(f"Cleanup complete: Deleted {len(backups_to_delete)} old backup(s) for {backup_name}")
    return len(backups_to_delete)
