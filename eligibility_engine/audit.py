from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from hashlib import sha256
from typing import Protocol

import structlog
from pydantic import ConfigDict
from pydantic.dataclasses import dataclass as pydantic_dataclass

from .models import EligibilityDecision


@pydantic_dataclass(config=ConfigDict(extra="forbid"))
class RegistrationAuditRecord:
    correlation_id: str
    record_id: str
    document_number: str
    decision: EligibilityDecision
    name_mismatch: bool
    timestamp: datetime


class AuditSink(Protocol):
    """Append-only sink for registration audit records."""

    def append(self, record: RegistrationAuditRecord) -> str:
        ...


@dataclass
class InMemoryAuditSink:
    records: dict[str, RegistrationAuditRecord]

    def append(self, record: RegistrationAuditRecord) -> str:
        audit_id = sha256(f"{record.correlation_id}:{record.record_id}:{record.timestamp.isoformat()}".encode()).hexdigest()
        self.records[audit_id] = record
        return audit_id


@dataclass
class AuditLogger:
    sink: AuditSink
    logger: structlog.stdlib.BoundLogger

    def create_record(
        self,
        *,
        correlation_id: str,
        record_id: str,
        document_number: str,
        decision: EligibilityDecision,
        name_mismatch: bool,
    ) -> str:
        record = RegistrationAuditRecord(
            correlation_id=correlation_id,
            record_id=record_id,
            document_number=document_number,
            decision=decision,
            name_mismatch=name_mismatch,
            timestamp=datetime.now(timezone.utc),
        )
        audit_id = self.sink.append(record)
        self.logger.info(
            "registration_audit_record",
            audit_id=audit_id,
            correlation_id=correlation_id,
            record_id=record_id,
            document_number=self._mask(document_number),
            is_eligible=decision.is_eligible,
            needs_human_review=decision.needs_human_review,
            reasons=list(decision.reasons),
            name_mismatch=name_mismatch,
            timestamp=record.timestamp.isoformat(),
        )
        return audit_id

    @staticmethod
    def _mask(value: str) -> str:
        if len(value) <= 4:
            return "*" * len(value)
        return f"{value[:2]}***{value[-2:]}"
