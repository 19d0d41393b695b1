"""
Persisted schema for bundles awaiting transmission.

Rows are never deleted: sent and failed rows stay in the table as the
audit trail of every delivery attempt series.
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, Index, Integer, String, Text
from sqlalchemy.types import TypeDecorator

from fhir_bridge.models.database import Base


class BundleStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class IsoTimestamp(TypeDecorator):
    """
    Timezone-aware datetime stored as fixed-width ISO-8601 UTC text, so that
    string comparison in SQL orders the same way as time.
    """

    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Queue timestamps must be timezone-aware")
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return datetime.fromisoformat(value).astimezone(timezone.utc)


class QueuedBundle(Base):
    __tablename__ = "pending_bundles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    bundle_id = Column(Text, nullable=False)
    bundle_json = Column(Text, nullable=False, comment="Serialized bundle (Fernet token if encrypted)")
    patient_id = Column(Text, nullable=False)
    clinic_id = Column(Text, nullable=False)
    created_at = Column(IsoTimestamp, nullable=False)
    retry_count = Column(Integer, nullable=False, default=0, server_default="0")
    last_error = Column(Text, nullable=True)
    status = Column(
        String(16),
        nullable=False,
        default=BundleStatus.PENDING.value,
        server_default=BundleStatus.PENDING.value,
    )

    __table_args__ = (
        Index("idx_status", "status"),
        Index("idx_created", "created_at"),
    )
