"""Audit emission — one write-once record per dispatched action.

Records are handed to the configured sink as background tasks. A failing
sink is logged and never fails or delays the dispatch that produced the
record. Parameters are redacted before a record is built, so secret-bearing
values never reach any sink.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from app.core.config import Settings
from app.db.postgres import create_engine, create_session_factory, init_audit_schema
from app.gateway.types import AuditRecord
from app.models.audit_record import AuditRecordRow

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("app.audit")

REDACTED = "***"

# Matches access_token or authToken, not maxTokens
_SECRET_KEY_PATTERN = re.compile(
    r"api[_-]?key|(^|[_-]|access|refresh|auth|bearer|id|api)token$|secret|password|passwd|authorization|credential",
    re.IGNORECASE,
)


def redact_parameters(value: Any, secrets: Iterable[str] = ()) -> Any:
    """Copy ``value`` with secret-like keys and known credential values masked."""
    secrets = [s for s in secrets if s]
    return _redact(value, secrets)


def _redact(value: Any, secrets: list[str]) -> Any:
    if isinstance(value, Mapping):
        return {
            str(k): REDACTED if _SECRET_KEY_PATTERN.search(str(k)) else _redact(v, secrets)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(v, secrets) for v in value]
    if isinstance(value, str):
        for secret in secrets:
            if secret in value:
                value = value.replace(secret, REDACTED)
        return value
    return value


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class AuditSink(Protocol):
    async def append(self, record: AuditRecord) -> None: ...

    async def aclose(self) -> None: ...


class NullAuditSink:
    async def append(self, record: AuditRecord) -> None:
        return None

    async def aclose(self) -> None:
        return None


class LoggingAuditSink:
    """Writes each record as one structured line on the ``app.audit`` logger."""

    async def append(self, record: AuditRecord) -> None:
        audit_logger.info(
            "%s.%s outcome=%s provider=%s latency_ms=%d attempts=%d",
            record.resource,
            record.action,
            record.outcome.value,
            record.provider.key if record.provider else "-",
            record.latency_ms,
            record.attempts,
            extra={"audit": record.to_dict()},
        )

    async def aclose(self) -> None:
        return None


class SqlAlchemyAuditSink:
    """Inserts records into ``gateway_audit_records``; the table is created on first use."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory: async_sessionmaker = create_session_factory(engine)
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._schema_lock:
            if not self._schema_ready:
                await init_audit_schema(self.engine)
                self._schema_ready = True

    async def append(self, record: AuditRecord) -> None:
        await self._ensure_schema()
        async with self._session_factory() as session:
            session.add(
                AuditRecordRow(
                    record_id=record.record_id,
                    session_id=record.session_id,
                    client_key=record.client_key,
                    resource=record.resource,
                    action=record.action,
                    provider=record.provider.key if record.provider else None,
                    parameters=record.parameters,
                    outcome=record.outcome.value,
                    error_message=record.error_message or None,
                    latency_ms=record.latency_ms,
                    attempts=record.attempts,
                    created_at=record.created_at,
                )
            )
            await session.commit()

    async def aclose(self) -> None:
        await self.engine.dispose()


def build_audit_sink(settings: Settings) -> AuditSink:
    """Sink selected by the AUDIT_SINK setting."""
    if settings.audit_sink == "none":
        return NullAuditSink()
    if settings.audit_sink == "sql":
        return SqlAlchemyAuditSink(create_engine(settings.audit_database_url))
    return LoggingAuditSink()


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------


class AuditEmitter:
    """Fire-and-forget delivery of audit records to a sink."""

    def __init__(self, sink: AuditSink | None = None):
        self.sink: AuditSink = sink or LoggingAuditSink()
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def emit(self, record: AuditRecord) -> None:
        task = asyncio.get_running_loop().create_task(self._write(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, record: AuditRecord) -> None:
        try:
            await self.sink.append(record)
        except Exception:
            logger.exception(
                "Audit write failed for record %s (%s.%s)", record.record_id, record.resource, record.action
            )

    async def drain(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        await self.sink.aclose()
