import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class AuditRecordRow(Base):
    """One dispatched action. Written once, never updated."""

    __tablename__ = "gateway_audit_records"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    record_id: Mapped[str] = mapped_column(
        String(32), nullable=False, unique=True, default=lambda: uuid.uuid4().hex
    )
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    client_key: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    resource: Mapped[str] = mapped_column(String(20), nullable=False)  # chat | search | browser | runtime | memory
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    provider: Mapped[str | None] = mapped_column(String(100), nullable=True)  # resource:provider:endpoint_class
    parameters: Mapped[dict] = mapped_column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)

    outcome: Mapped[str] = mapped_column(String(30), nullable=False, index=True)  # success | <error kind>
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    latency_ms: Mapped[int] = mapped_column(Integer, default=0)
    attempts: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True
    )
