from __future__ import annotations

from collections.abc import Iterable

from .models import RegistrationRecord


def is_duplicate(records: Iterable[RegistrationRecord], document_number: str) -> bool:
    """True when an accepted record already carries ``document_number`` (exact match)."""
    return any(record.extracted.document_number == document_number for record in records)
