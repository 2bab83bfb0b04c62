"""
Domain Risk Engine - Persistence Models.

============================================================
MODELS
============================================================
KeyValueRecord: one row per storage key

Keys follow the engine's layout:
- profile_<domain>: DomainProfile record
- meta_<domain>: {domain, size, last_access}
- rep_<domain>_<source>: cached reputation verdict

============================================================
"""

from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import DateTime, Index, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class KeyValueRecord(Base):
    """JSON document stored under a string key."""

    __tablename__ = "domain_risk_kv"

    key: Mapped[str] = mapped_column(
        String(512),
        primary_key=True,
        comment="Storage key (profile_/meta_/rep_ prefix)",
    )

    value: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        comment="Record body",
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_domain_risk_kv_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        return f"<KeyValueRecord(key={self.key})>"
