from __future__ import annotations

import csv
import io
from collections import Counter
from collections.abc import Iterable

from pydantic import BaseModel

from .models import RegistrationRecord

CSV_FIELDS = [
    "id",
    "full_name",
    "nationality",
    "id_type",
    "document_number",
    "date_of_birth",
    "status",
    "reasons",
    "submitted_at",
]


class RegistrationSummary(BaseModel):
    total: int
    eligible: int
    needs_review: int
    rejected: int
    by_nationality: dict[str, int]


def record_status(record: RegistrationRecord) -> str:
    if not record.decision.is_eligible:
        return "Rejected"
    if record.decision.needs_human_review:
        return "Review Required"
    return "Eligible"


def build_summary(records: Iterable[RegistrationRecord]) -> RegistrationSummary:
    """Aggregate counts for the administrative dashboard.

    A flagged but ineligible record counts as both rejected and needing review.
    """
    records = list(records)
    nationalities = Counter(record.claim.nationality.value for record in records)
    return RegistrationSummary(
        total=len(records),
        eligible=sum(1 for r in records if r.decision.is_eligible and not r.decision.needs_human_review),
        needs_review=sum(1 for r in records if r.decision.needs_human_review),
        rejected=sum(1 for r in records if not r.decision.is_eligible),
        by_nationality=dict(nationalities),
    )


def export_csv(records: Iterable[RegistrationRecord]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_FIELDS)
    writer.writeheader()
    for record in records:
        writer.writerow(
            {
                "id": record.id,
                "full_name": record.claim.full_name,
                "nationality": record.claim.nationality.value,
                "id_type": record.claim.id_type.value,
                "document_number": record.extracted.document_number,
                "date_of_birth": record.extracted.date_of_birth.isoformat(),
                "status": record_status(record),
                "reasons": "; ".join(record.decision.reasons),
                "submitted_at": record.created_at.isoformat(),
            }
        )
    return buffer.getvalue()
