from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, JSON, String, UniqueConstraint
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship
from datetime import datetime

Base = declarative_base()

class Backup(Base):
    __tablename__ = "backups"
    __table_args__ = (
        UniqueConstraint("client_id", "backup_name", "version", name="uq_backup_version"),
    )
    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(String, index=True, nullable=False)
    backup_name = Column(String, index=True, nullable=False)
    version = Column(Integer, nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow)
    status = Column(String, index=True, default="pending")  # pending, completed, failed
    files_count = Column(Integer, default=0)
    total_size = Column(BigInteger, default=0)
    metadata_ = Column("metadata", JSON, default=dict)

    files = relationship("BackupFile", back_populates="backup", cascade="all, delete-orphan")

class BackupFile(Base):
    __tablename__ = "backup_files"
    __table_args__ = (
        UniqueConstraint("backup_id", "file_path", name="uq_backup_file_path"),
    )
    id = Column(Integer, primary_key=True, index=True)
    backup_id = Column(Integer, ForeignKey("backups.id", ondelete="CASCADE"), index=True, nullable=False)
    file_path = Column(String, nullable=False)
    file_size = Column(BigInteger, default=0)
    checksum = Column(String)
    status = Column(String, default="pending")  # pending, uploaded, failed
    uploaded_at = Column(DateTime, default=datetime.utcnow)

    backup = relationship("Backup", back_populates="files")

class SyncLog(Base):
    __tablename__ = "sync_logs"
    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(String, index=True, nullable=False)
    action = Column(String, nullable=False)
    status = Column(String, nullable=False)  # success, failed
    message = Column(String)
    metadata_ = Column("metadata", JSON, default=dict)
    timestamp = Column(DateTime, default=datetime.utcnow)
