from datetime import datetime
from typing import Optional
from sqlalchemy import Column, String, DateTime, Boolean, JSON, Index
from dataexport.core.database import Base


class Record(Base):
    """A document in a named collection (cases, contacts, events, ...); ids are unique per collection."""

    __tablename__ = "records"

    collection = Column(String, primary_key=True, index=True)
    id = Column(String, primary_key=True)
    data = Column(JSON, nullable=False, default=dict)
    deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_records_collection_deleted", "collection", "deleted"),
    )


def as_document(record_id: str, data: Optional[dict]) -> dict:
    """Document as seen by the export engine: stored data plus the record id."""
    document = dict(data or {})
    document["id"] = record_id
    return document
