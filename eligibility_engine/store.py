from __future__ import annotations

import secrets
import string
import threading
from collections.abc import Iterator

from .duplicates import is_duplicate
from .exceptions import DuplicateDocumentError
from .models import RegistrationRecord

_ID_ALPHABET = string.ascii_uppercase + string.digits


class RegistrationStore:
    """Append-only, process-wide collection of finalized registrations.

    Records are keyed by generated id and indexed by document number.
    ``append`` is a compare-and-append under a lock, so a document number
    accepted by another session between a caller's check and its append is
    still rejected.
    """

    def __init__(self) -> None:
        self._records: dict[str, RegistrationRecord] = {}
        self._document_index: dict[str, str] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[RegistrationRecord]:
        return iter(self.snapshot())

    def snapshot(self) -> tuple[RegistrationRecord, ...]:
        with self._lock:
            return tuple(self._records.values())

    def get(self, record_id: str) -> RegistrationRecord | None:
        return self._records.get(record_id)

    def is_duplicate(self, document_number: str) -> bool:
        return is_duplicate(self.snapshot(), document_number)

    def new_record_id(self) -> str:
        while True:
            record_id = "TR-" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
            if record_id not in self._records:
                return record_id

    def append(self, record: RegistrationRecord) -> None:
        document_number = record.extracted.document_number
        with self._lock:
            if document_number in self._document_index:
                raise DuplicateDocumentError(document_number)
            if record.id in self._records:
                raise ValueError(f"Record id already stored: {record.id}")
            self._records[record.id] = record
            self._document_index[document_number] = record.id
