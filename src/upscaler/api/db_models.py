from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Process(Base):
    __tablename__ = "processes"
    id = Column(String, primary_key=True)
    status = Column(String, nullable=False)  # JobStatus value
    images = Column(Text, nullable=False)  # JSON list of source URLs
    remaining = Column(Integer, default=0)
    title = Column(String)
    error = Column(Text, nullable=True)  # failure reason, set with FAILED
    createdAt = Column(DateTime, default=utcnow)  # noqa: N815
    updatedAt = Column(DateTime, default=utcnow, onupdate=utcnow)  # noqa: N815
