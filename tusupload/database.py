"""Database setup and upload persistence using SQLModel"""

import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, col, create_engine, select

from tusupload.config import settings
from tusupload.models.tus_upload import TERMINAL_STATUSES, TusUpload
from tusupload.utils.logger import get_logger

logger = get_logger(__name__)


class DatabaseService:
    """Persists TusUpload records so progress survives restarts"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url
        self.engine: Optional[Engine] = None

    def _normalize_url(self, database_url: str) -> str:
        """Create the directory of a file-backed SQLite database"""
        if not database_url.startswith("sqlite:///") or database_url.endswith(":memory:"):
            return database_url

        path = database_url.replace("sqlite:///", "", 1)
        if os.name == "nt":
            path = path.replace("/", os.sep)

        db_dir = os.path.dirname(path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)
            logger.debug(f"Created database directory: {db_dir}")

        normalized_path = path.replace("\\", "/")
        return f"sqlite:///{normalized_path}"

    def initialize(self):
        """Initialize database connection and create tables"""
        try:
            database_url = self._normalize_url(self.database_url or settings.database_url)
            logger.debug(f"Connecting to database: {database_url.split('/')[-1]}")

            if database_url.startswith("sqlite"):
                self.engine = create_engine(
                    database_url,
                    connect_args={"check_same_thread": False},
                    echo=False,
                )
                if not database_url.endswith(":memory:") and database_url != "sqlite://":
                    with self.engine.connect() as conn:
                        # WAL keeps offset updates cheap while readers poll status
                        conn.exec_driver_sql("PRAGMA journal_mode=WAL")
                        conn.exec_driver_sql("PRAGMA synchronous=NORMAL")
                        conn.commit()
            else:
                self.engine = create_engine(
                    database_url,
                    echo=False,
                    pool_pre_ping=True,
                    pool_size=5,
                    max_overflow=10,
                    pool_recycle=3600,
                )

            SQLModel.metadata.create_all(self.engine)
            logger.debug("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    def get_session(self) -> Session:
        """Get database session"""
        if not self.engine:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return Session(self.engine)

    def save_upload(self, upload: TusUpload) -> None:
        """Insert or update an upload record"""
        upload.updated_at = datetime.utcnow()
        with self.get_session() as session:
            session.merge(upload)
            session.commit()

    def get_upload(self, upload_id: str) -> Optional[TusUpload]:
        with self.get_session() as session:
            return session.get(TusUpload, upload_id)

    def restore_uploads(self) -> List[TusUpload]:
        """Uploads that still need work, oldest first"""
        with self.get_session() as session:
            statement = (
                select(TusUpload)
                .where(col(TusUpload.status).not_in(TERMINAL_STATUSES))
                .order_by(TusUpload.created_at, TusUpload.id)
            )
            return list(session.exec(statement).all())

    def delete_upload(self, upload_id: str) -> bool:
        with self.get_session() as session:
            upload = session.get(TusUpload, upload_id)
            if not upload:
                return False
            session.delete(upload)
            session.commit()
            return True

    async def health_check(self) -> bool:
        """Check database health"""
        try:
            with self.get_session() as session:
                session.exec(select(1)).first()
                return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def get_stats(self) -> Dict[str, Any]:
        """Upload counts per status"""
        try:
            with self.get_session() as session:
                uploads = session.exec(select(TusUpload)).all()
                counts: Dict[str, int] = {}
                for upload in uploads:
                    counts[upload.status] = counts.get(upload.status, 0) + 1
                return {"total_uploads": len(uploads), "by_status": counts}
        except Exception as e:
            logger.error(f"Failed to get database stats: {e}")
            return {}

    def close(self):
        """Close database connection"""
        if self.engine:
            self.engine.dispose()
            logger.debug("Database connection closed")
