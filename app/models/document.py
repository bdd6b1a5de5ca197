"""
Document Model backing the SQL document store.

Every leaf document of the hierarchical store lives in one row keyed by its
full path:

    return_records/RT-2025-0001
    ncr_reports/NCR-2025-0001-1
    counters/ncr_counter
    system_config

The `version` column drives optimistic compare-and-swap for run_atomic.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import String, Integer, DateTime, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class Document(Base):
    """One stored document value at a hierarchical path."""
    __tablename__ = "documents"

    path: Mapped[str] = mapped_column(
        String(512),
        primary_key=True,
        comment="Slash separated path, e.g. return_records/<id>"
    )
    value: Mapped[Any] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=True
    )
    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
        comment="Incremented on every write"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Document(path='{self.path}', version={self.version})>"
