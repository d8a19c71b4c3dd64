import re
from datetime import datetime
from pathlib import Path
from typing import Optional
from backup_server.core.exceptions import ValidationError

_UNSAFE_COMPONENT = re.compile(r"[\x00/\\]")

def normalize_file_name(raw_name: str, now: Optional[datetime] = None) -> str:
    """
    Normalize a client supplied file name into a relative forward-slash path.

    Windows 8.3 short names (``PROGRA~1.BAK``) carry no useful information,
    so they are replaced with a timestamped placeholder keeping the extension.
    """
    if not raw_name or not raw_name.strip():
        raise ValidationError("fileName is required")

    file_name = raw_name.replace("\\", "/")

    if "~" in file_name and len(file_name) <= 12:
        ext = file_name.rsplit(".", 1)[-1] if "." in file_name else "bin"
        timestamp = (now or datetime.utcnow()).isoformat().replace(":", "-").replace(".", "-")
        file_name = f"file_{timestamp}.{ext}"

    if file_name.startswith("/") or re.match(r"^[A-Za-z]:", file_name):
        raise ValidationError(f"fileName must be relative: {raw_name}")

    parts = [part for part in file_name.split("/") if part]
    if not parts or any(part in (".", "..") for part in parts):
        raise ValidationError(f"Invalid fileName: {raw_name}")

    return "/".join(parts)

def validate_path_component(value: str, field: str) -> str:
    """
    Ensure a client or backup name can be used as a single directory name.
    """
    if not value or not value.strip():
        raise ValidationError(f"{field} is required")
    if _UNSAFE_COMPONENT.search(value) or value in (".", ".."):
        raise ValidationError(f"Invalid {field}: {value}")
    return value

def format_iso_date(timestamp: datetime) -> str:
    """
    Compact timestamp stored in backup metadata, e.g. ``14:30:05,19-10-2026``.
    """
    return timestamp.strftime("%H:%M:%S,%d-%m-%Y")

def version_directory(storage_dir: Path, client_id: str, backup_name: str, version: int) -> Path:
    return storage_dir / client_id / backup_name / f"v{version}"

def ensure_directory_exists(directory_path: Path) -> None:
    """
    Ensure that a directory exists, creating it if necessary.
    """
    directory_path.mkdir(parents=True, exist_ok=True)
