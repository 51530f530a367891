"""SQLAlchemy database models for the offline share queue."""

from sqlalchemy import BigInteger, Column, Index, Integer, JSON, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


class QueuedShareRecord(Base):
    """Model for share_queue table."""
    __tablename__ = 'share_queue'
    # sqlite_autoincrement keeps ids of removed rows from being reused
    __table_args__ = (
        Index('idx_share_queue_timestamp', 'timestamp'),
        {'sqlite_autoincrement': True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(Text, nullable=True)
    text = Column(Text, nullable=True)
    url = Column(Text, nullable=True)
    files = Column(JSON, nullable=False, default=list)  # [{name, type, size, data}]
    timestamp = Column(BigInteger, nullable=False)  # milliseconds since epoch
