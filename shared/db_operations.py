"""Database operations for the offline share queue."""

import logging
import time
from pathlib import Path
from typing import List, Optional

from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DatabaseError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from shared.config import get_queue_database_url
from shared.db_models import Base, QueuedShareRecord
from shared.models import NewQueuedShare, QueuedFile, QueuedShare

logger = logging.getLogger(__name__)


class StorageUnavailable(Exception):
    """Raised when the queue store cannot be opened or written."""


def _now_ms() -> int:
    return int(time.time() * 1000)


class ShareQueue:
    """Durable queue of shares that could not be delivered yet."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or get_queue_database_url()
        self._ensure_sqlite_directory(self.database_url)
        self.engine = create_engine(self.database_url, pool_pre_ping=True, **self._engine_options(self.database_url))
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    @staticmethod
    def _ensure_sqlite_directory(database_url: str) -> None:
        url = make_url(database_url)
        if url.get_backend_name() != "sqlite":
            return
        database = url.database
        if database and database != ":memory:" and not database.startswith("file:"):
            Path(database).parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _engine_options(database_url: str) -> dict:
        # Queue calls run in worker threads that must share one in-memory connection
        url = make_url(database_url)
        if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
            return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        return {}

    def create_tables(self):
        """Create the queue table in the database."""
        try:
            Base.metadata.create_all(bind=self.engine)
        except DatabaseError as e:
            raise StorageUnavailable(f"Cannot create share queue table: {e}") from e

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    def enqueue(self, entry: NewQueuedShare) -> int:
        """
        Append a share to the queue.

        Args:
            entry: The share to store; its file data must already be base64

        Returns:
            The auto-incremented id assigned to the entry

        Raises:
            StorageUnavailable: If the store cannot be opened or written
        """
        try:
            with self.get_session() as session:
                record = QueuedShareRecord(
                    title=entry.title,
                    text=entry.text,
                    url=entry.url,
                    files=[queued_file.to_dict() for queued_file in entry.files],
                    timestamp=_now_ms()
                )
                session.add(record)
                session.commit()
                queue_id = record.id
        except DatabaseError as e:
            logger.error(f"Failed to enqueue share: {e}", exc_info=True)
            raise StorageUnavailable(f"Share queue unavailable: {e}") from e

        logger.info(f"Queued share {queue_id} ({len(entry.files)} file(s))")
        return queue_id

    def list_all(self) -> List[QueuedShare]:
        """
        Get all queued shares.

        Returns:
            List of QueuedShare entries ordered by id

        Raises:
            StorageUnavailable: If the store cannot be read
        """
        try:
            with self.get_session() as session:
                stmt = select(QueuedShareRecord).order_by(QueuedShareRecord.id.asc())
                records = session.execute(stmt).scalars().all()
                return [self._to_entry(record) for record in records]
        except DatabaseError as e:
            raise StorageUnavailable(f"Share queue unavailable: {e}") from e

    def remove_by_id(self, queue_id: int) -> None:
        """
        Remove a queued share. Removing an unknown id is a no-op.

        Raises:
            StorageUnavailable: If the store cannot be written
        """
        try:
            with self.get_session() as session:
                deleted = session.query(QueuedShareRecord).filter(
                    QueuedShareRecord.id == queue_id
                ).delete()
                session.commit()
        except DatabaseError as e:
            raise StorageUnavailable(f"Share queue unavailable: {e}") from e

        if deleted:
            logger.info(f"Removed share {queue_id} from queue")
        else:
            logger.debug(f"Share {queue_id} was already removed from queue")

    def count(self) -> int:
        """Get the number of queued shares."""
        try:
            with self.get_session() as session:
                return session.execute(
                    select(func.count()).select_from(QueuedShareRecord)
                ).scalar_one()
        except DatabaseError as e:
            raise StorageUnavailable(f"Share queue unavailable: {e}") from e

    @staticmethod
    def _to_entry(record: QueuedShareRecord) -> QueuedShare:
        return QueuedShare(
            id=record.id,
            title=record.title,
            text=record.text,
            url=record.url,
            files=[QueuedFile.from_dict(item) for item in (record.files or [])],
            timestamp=record.timestamp
        )
