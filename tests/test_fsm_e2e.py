import asyncio
import gc
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from typing import Any

import pytest
import structlog
from aiogram.fsm.context import FSMContext
from aiogram.fsm.storage.base import StorageKey
from aiogram.fsm.storage.memory import MemoryStorage

from bot import handlers_registration
from bot.fsm_states import RegistrationFSM
from bot.handlers_registration import AdminGate, RegistrationFlow, parse_supplemental
from eligibility_engine.audit import AuditLogger, InMemoryAuditSink
from eligibility_engine.exceptions import (
    AuthorizationError,
    ClaimValidationError,
    ExtractionFailureError,
    RegistrationValidationError,
)
from eligibility_engine.models import (
    ApplicantClaim,
    EligibilityDecision,
    ExtractedRecord,
    IdType,
    RegistrationRecord,
    SupplementalInfo,
)
from eligibility_engine.store import RegistrationStore

ADMIN_CODE = "AdminEntry"


def _extracted(
    *,
    full_name: str = "Omar Khaled",
    document_number: str = "X1",
    dob: str = "1990-01-01",
    readable: bool = True,
    reason: str | None = None,
) -> ExtractedRecord:
    return ExtractedRecord(
        full_name=full_name,
        date_of_birth=dob,
        document_number=document_number,
        document_class="National ID",
        confidence={"full_name": 0.95, "date_of_birth": 0.95, "document_number": 0.95},
        quality_check={"is_clear": readable, "is_complete": True, "is_readable": readable, "reason": reason},
    )


class FakeExtractor:
    def __init__(self, results: list[Any]) -> None:
        self.results = results
        self.calls: list[tuple[bytes, IdType]] = []

    async def extract(self, image: bytes, id_type: IdType) -> ExtractedRecord:
        self.calls.append((image, id_type))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class GatedExtractor(FakeExtractor):
    def __init__(self, results: list[Any]) -> None:
        super().__init__(results)
        self.release = asyncio.Event()

    async def extract(self, image: bytes, id_type: IdType) -> ExtractedRecord:
        self.calls.append((image, id_type))
        await self.release.wait()
        return self.results.pop(0)


class SlowExtractor(FakeExtractor):
    async def extract(self, image: bytes, id_type: IdType) -> ExtractedRecord:
        self.calls.append((image, id_type))
        await asyncio.sleep(1)
        return _extracted()


class YieldingStorage(MemoryStorage):
    """Memory storage whose reads suspend once, like a networked backend."""

    async def get_data(self, key: StorageKey) -> dict[str, Any]:
        data = await super().get_data(key)
        await asyncio.sleep(0)
        return data


def _ctx(storage: MemoryStorage, chat_id: int = 77) -> FSMContext:
    return FSMContext(storage=storage, key=StorageKey(bot_id=42, chat_id=chat_id, user_id=chat_id))


def _flow(extractor: FakeExtractor, store: RegistrationStore | None = None, **kwargs: Any) -> RegistrationFlow:
    return RegistrationFlow(
        extractor=extractor,
        store=store if store is not None else RegistrationStore(),
        admin_gate=AdminGate(access_code=ADMIN_CODE),
        **kwargs,
    )


def _stored_record(store: RegistrationStore, document_number: str) -> RegistrationRecord:
    return RegistrationRecord(
        id=store.new_record_id(),
        claim=ApplicantClaim(full_name="Someone Else"),
        extracted=_extracted(full_name="Someone Else", document_number=document_number),
        supplemental=SupplementalInfo(),
        decision=EligibilityDecision(is_eligible=True, needs_human_review=False, reasons=()),
    )


async def _to_capture(flow: RegistrationFlow, context: FSMContext, name: str = "Omar Khaled") -> None:
    await flow.start(context)
    await flow.update_claim(context, full_name=name, nationality="Egyptian", id_type="Egyptian ID")
    result = await flow.submit_claim(context)
    assert result["state"] == "CAPTURING_DOCUMENT"


async def _wait_for_state(context: FSMContext, expected: str) -> None:
    for _ in range(20):
        if await context.get_state() == expected:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"state {expected} not reached")


def test_happy_path_creates_record_and_audit():
    async def _run() -> None:
        storage = MemoryStorage()
        context = _ctx(storage)
        store = RegistrationStore()
        sink = InMemoryAuditSink(records={})
        extractor = FakeExtractor([_extracted()])
        flow = _flow(
            extractor,
            store,
            audit_logger=AuditLogger(sink=sink, logger=structlog.get_logger("fsm_audit_test")),
        )

        started = await flow.start(context)
        assert started["state"] == "COLLECTING_CLAIM"
        assert started["correlation_id"]

        await flow.update_claim(context, full_name="  Omar Khaled ")
        await flow.update_claim(context, nationality="Egyptian", id_type="Egyptian ID")
        await flow.submit_claim(context)

        review = await flow.extract_document(context, image=b"jpeg-bytes", source="file")
        assert review["state"] == "REVIEWING_EXTRACTION"
        assert review["name_mismatch"] is False
        assert "Document number: **" in review["preview"]
        assert extractor.calls == [(b"jpeg-bytes", IdType.EGYPTIAN_ID)]

        confirmed = await flow.confirm_extraction(context)
        assert confirmed["state"] == "COLLECTING_SUPPLEMENTAL"

        updated = await flow.update_supplemental(context, household_size=4, has_financial_dependents=True)
        assert updated["supplemental"]["household_size"] == 4

        done = await flow.submit(context)
        assert done["state"] == "SUBMITTED"
        assert done["decision"] == {"is_eligible": True, "needs_human_review": False, "reasons": []}
        assert await context.get_state() == RegistrationFSM.SUBMITTED.state

        record = store.get(done["record_id"])
        assert record is not None
        assert record.claim.full_name == "Omar Khaled"
        assert record.supplemental.household_size == 4
        assert record.supplemental.has_financial_dependents is True
        assert len(sink.records) == 1

    asyncio.run(_run())


def test_blank_name_blocks_claim_submission():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        flow = _flow(FakeExtractor([]))
        await flow.start(context)
        await flow.update_claim(context, full_name="   ")

        result = await flow.submit_claim(context)

        assert result == {"state": "COLLECTING_CLAIM", "error": "validation", "message": "Please enter your full name."}
        assert await context.get_state() == RegistrationFSM.COLLECTING_CLAIM.state

    asyncio.run(_run())


def test_unknown_nationality_rejected():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        flow = _flow(FakeExtractor([]))
        await flow.start(context)

        result = await flow.update_claim(context, nationality="Martian")

        assert result["error"] == "validation"
        assert result["state"] == "COLLECTING_CLAIM"

    asyncio.run(_run())


def test_unreadable_document_returns_to_capture_with_reason():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        store = RegistrationStore()
        flow = _flow(
            FakeExtractor([_extracted(readable=False, reason="Image is blurry"), _extracted(readable=False)]),
            store,
        )
        await _to_capture(flow, context)

        first = await flow.extract_document(context, image=b"img")
        assert first["state"] == "CAPTURING_DOCUMENT"
        assert first["error"] == "quality_rejected"
        assert first["message"] == "Image rejected: Image is blurry"

        second = await flow.extract_document(context, image=b"img")
        assert second["message"] == "Image rejected: Please provide a clearer photo of your ID."
        assert len(store) == 0

    asyncio.run(_run())


def test_extraction_failure_is_recoverable():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        extractor = FakeExtractor([ExtractionFailureError("boom"), RuntimeError("network down"), _extracted()])
        flow = _flow(extractor)
        await _to_capture(flow, context)

        failed = await flow.extract_document(context, image=b"img")
        assert failed == {
            "state": "CAPTURING_DOCUMENT",
            "error": "extraction_failed",
            "message": "Failed to process the document. Please try again.",
        }
        crashed = await flow.extract_document(context, image=b"img")
        assert crashed["error"] == "extraction_failed"

        retried = await flow.extract_document(context, image=b"img")
        assert retried["state"] == "REVIEWING_EXTRACTION"
        assert len(extractor.calls) == 3

    asyncio.run(_run())


def test_extraction_timeout_treated_as_failure():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        flow = _flow(SlowExtractor([]), extraction_timeout_sec=0.01)
        await _to_capture(flow, context)

        result = await flow.extract_document(context, image=b"img")

        assert result["error"] == "extraction_failed"
        assert await context.get_state() == RegistrationFSM.CAPTURING_DOCUMENT.state

    asyncio.run(_run())


def test_duplicate_after_extraction_rejected():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        store = RegistrationStore()
        store.append(_stored_record(store, "X1"))
        flow = _flow(FakeExtractor([_extracted(document_number="X1")]), store)
        await _to_capture(flow, context)

        result = await flow.extract_document(context, image=b"img")

        assert result["state"] == "CAPTURING_DOCUMENT"
        assert result["error"] == "duplicate"
        assert result["message"] == "This ID has been recorded before, please wait for our call"
        assert len(store) == 1

    asyncio.run(_run())


def test_duplicate_recorded_during_session_aborts_submission():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        store = RegistrationStore()
        flow = _flow(FakeExtractor([_extracted(document_number="X1")]), store)
        await _to_capture(flow, context)
        await flow.extract_document(context, image=b"img")
        await flow.confirm_extraction(context)

        store.append(_stored_record(store, "X1"))
        result = await flow.submit(context)

        assert result["state"] == "CAPTURING_DOCUMENT"
        assert result["error"] == "duplicate"
        assert len(store) == 1
        data = await context.get_data()
        assert data["session"] == {
            "stage": "capturing_document",
            "claim": {"full_name": "Omar Khaled", "nationality": "Egyptian", "id_type": "Egyptian ID"},
        }

    asyncio.run(_run())


def test_repeated_submission_of_same_document_never_grows_store():
    async def _run() -> None:
        storage = MemoryStorage()
        store = RegistrationStore()
        flow = _flow(FakeExtractor([_extracted(document_number="X1"), _extracted(document_number="X1")]), store)

        first = _ctx(storage, chat_id=1)
        await _to_capture(flow, first)
        await flow.extract_document(first, image=b"img")
        await flow.confirm_extraction(first)
        assert (await flow.submit(first))["state"] == "SUBMITTED"

        second = _ctx(storage, chat_id=2)
        await _to_capture(flow, second)
        result = await flow.extract_document(second, image=b"img")

        assert result["error"] == "duplicate"
        assert len(store) == 1

    asyncio.run(_run())


def test_second_trigger_while_extracting_is_rejected():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        extractor = GatedExtractor([_extracted()])
        flow = _flow(extractor)
        await _to_capture(flow, context)

        first = asyncio.create_task(flow.extract_document(context, image=b"img-1"))
        await _wait_for_state(context, RegistrationFSM.EXTRACTING.state)

        second = await flow.extract_document(context, image=b"img-2")
        assert second["error"] == "extraction_in_progress"
        assert second["state"] == "EXTRACTING"

        extractor.release.set()
        result = await first
        assert result["state"] == "REVIEWING_EXTRACTION"
        assert extractor.calls == [(b"img-1", IdType.EGYPTIAN_ID)]

    asyncio.run(_run())


def test_stale_completion_after_abandon_is_discarded():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        extractor = GatedExtractor([_extracted()])
        flow = _flow(extractor)
        await _to_capture(flow, context)

        pending = asyncio.create_task(flow.extract_document(context, image=b"img"))
        await _wait_for_state(context, RegistrationFSM.EXTRACTING.state)

        abandoned = await flow.abandon_extraction(context)
        assert abandoned["state"] == "CAPTURING_DOCUMENT"

        extractor.release.set()
        stale = await pending
        assert stale["error"] == "stale_attempt"
        assert await context.get_state() == RegistrationFSM.CAPTURING_DOCUMENT.state

    asyncio.run(_run())


def test_completion_with_foreign_attempt_id_is_discarded():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        flow = _flow(FakeExtractor([]))
        await _to_capture(flow, context)
        attached = await flow.attach_image(context, image=b"img")
        assert attached["state"] == "EXTRACTING"

        stale = await flow.complete_extraction(context, attempt_id="not-current", extracted=_extracted())

        assert stale["error"] == "stale_attempt"
        assert await context.get_state() == RegistrationFSM.EXTRACTING.state

    asyncio.run(_run())


def test_empty_image_is_rejected():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        flow = _flow(FakeExtractor([]))
        await _to_capture(flow, context)

        result = await flow.attach_image(context, image=b"")

        assert result == {
            "state": "CAPTURING_DOCUMENT",
            "error": "validation",
            "message": "Please capture or upload a photo of your ID.",
        }

    asyncio.run(_run())


def test_invalid_supplemental_fields_are_refused():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        flow = _flow(FakeExtractor([_extracted()]))
        await _to_capture(flow, context)
        await flow.extract_document(context, image=b"img")
        await flow.confirm_extraction(context)

        result = await flow.update_supplemental(context, household_size=0)

        assert result == {
            "state": "COLLECTING_SUPPLEMENTAL",
            "error": "validation",
            "message": "Please check the additional information and try again.",
        }

    asyncio.run(_run())


def test_claim_errors_are_a_kind_of_validation_error():
    assert issubclass(ClaimValidationError, RegistrationValidationError)
    assert ClaimValidationError().user_message == "Please enter your full name."
    assert RegistrationValidationError().code == ClaimValidationError.code == "validation"


def test_double_submission_keeps_the_submitted_session():
    async def _run() -> None:
        storage = YieldingStorage()
        context = _ctx(storage)
        store = RegistrationStore()
        flow = _flow(FakeExtractor([_extracted(document_number="X1")]), store)
        await _to_capture(flow, context)
        await flow.extract_document(context, image=b"img")
        await flow.confirm_extraction(context)

        first, second = await asyncio.gather(flow.submit(context), flow.submit(context))

        assert first["state"] == "SUBMITTED"
        assert second == {
            "state": "SUBMITTED",
            "error": "invalid_transition",
            "message": "This action is not available at the current step.",
        }
        assert len(store) == 1
        assert await context.get_state() == RegistrationFSM.SUBMITTED.state

    asyncio.run(_run())


def test_concurrent_back_and_confirm_apply_one_after_another():
    async def _run() -> None:
        context = _ctx(YieldingStorage())
        flow = _flow(FakeExtractor([_extracted()]))
        await _to_capture(flow, context)
        await flow.extract_document(context, image=b"img")

        confirmed, back = await asyncio.gather(flow.confirm_extraction(context), flow.go_back(context))

        assert confirmed["state"] == "COLLECTING_SUPPLEMENTAL"
        assert back["state"] == "REVIEWING_EXTRACTION"
        assert "error" not in back
        assert await context.get_state() == RegistrationFSM.REVIEWING_EXTRACTION.state

    asyncio.run(_run())


def test_session_locks_are_released_after_use():
    async def _run() -> None:
        storage = MemoryStorage()
        flow = _flow(FakeExtractor([_extracted(document_number=f"X{i}") for i in range(3)]))
        for chat_id in range(3):
            context = _ctx(storage, chat_id=chat_id)
            await _to_capture(flow, context)
            await flow.extract_document(context, image=b"img")
            await flow.confirm_extraction(context)
            assert (await flow.submit(context))["state"] == "SUBMITTED"

        gc.collect()
        assert len(flow._locks) == 0

    asyncio.run(_run())


def test_name_mismatch_flag_is_advisory():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        flow = _flow(FakeExtractor([_extracted(full_name="ahmed ali "), _extracted(full_name="Ahmed Hassan")]))

        await _to_capture(flow, context, name="Ahmed Ali")
        same = await flow.extract_document(context, image=b"img")
        assert same["name_mismatch"] is False

        await flow.go_back(context)
        different = await flow.extract_document(context, image=b"img")
        assert different["name_mismatch"] is True
        assert "differs from the name you entered" in different["preview"]

        confirmed = await flow.confirm_extraction(context)
        assert confirmed["state"] == "COLLECTING_SUPPLEMENTAL"

    asyncio.run(_run())


def test_back_navigation_keeps_upstream_data():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        store = RegistrationStore()
        flow = _flow(FakeExtractor([_extracted()]), store)
        await _to_capture(flow, context)
        await flow.extract_document(context, image=b"img")
        await flow.confirm_extraction(context)

        to_review = await flow.go_back(context)
        assert to_review["state"] == "REVIEWING_EXTRACTION"
        data = await context.get_data()
        assert data["session"]["extracted"]["document_number"] == "X1"

        to_capture = await flow.go_back(context)
        assert to_capture["state"] == "CAPTURING_DOCUMENT"

        to_claim = await flow.go_back(context)
        assert to_claim["state"] == "COLLECTING_CLAIM"
        data = await context.get_data()
        assert data["session"]["claim"]["full_name"] == "Omar Khaled"

        refused = await flow.go_back(context)
        assert refused["error"] == "invalid_transition"
        assert len(store) == 0

    asyncio.run(_run())


def test_new_registration_resets_session_and_keeps_store():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        store = RegistrationStore()
        flow = _flow(FakeExtractor([_extracted()]), store)
        await _to_capture(flow, context)
        await flow.extract_document(context, image=b"img")
        await flow.confirm_extraction(context)
        done = await flow.submit(context)
        before = store.snapshot()

        reset = await flow.new_registration(context)

        assert reset["state"] == "COLLECTING_CLAIM"
        data = await context.get_data()
        assert data["session"] == {
            "stage": "collecting_claim",
            "claim": {"full_name": "", "nationality": "Egyptian", "id_type": "Egyptian ID"},
        }
        assert store.snapshot() == before
        assert store.get(done["record_id"]) is not None

    asyncio.run(_run())


def test_operations_outside_their_state_are_refused():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        flow = _flow(FakeExtractor([]))
        await flow.start(context)

        for result in (
            await flow.confirm_extraction(context),
            await flow.submit(context),
            await flow.abandon_extraction(context),
            await flow.new_registration(context),
            await flow.attach_image(context, image=b"img"),
        ):
            assert result["error"] == "invalid_transition"
            assert result["state"] == "COLLECTING_CLAIM"

    asyncio.run(_run())


def test_dashboard_requires_access_code():
    async def _run() -> None:
        context = _ctx(MemoryStorage())
        store = RegistrationStore()
        store.append(_stored_record(store, "X9"))
        flow = _flow(FakeExtractor([]), store)
        await flow.start(context)

        denied = await flow.open_dashboard(context, access_code="wrong")
        assert denied == {
            "state": "COLLECTING_CLAIM",
            "error": "unauthorized",
            "message": "Invalid administrator credentials.",
        }

        granted = await flow.open_dashboard(context, access_code=ADMIN_CODE)
        assert granted["state"] == "DASHBOARD"
        assert granted["summary"]["total"] == 1
        assert granted["summary"]["by_nationality"] == {"Egyptian": 1}

        exported = await flow.export_dashboard(context)
        assert "X9" in exported["csv"]

        closed = await flow.close_dashboard(context)
        assert closed["state"] == "COLLECTING_CLAIM"
        assert len(store) == 1

    asyncio.run(_run())


def test_empty_admin_code_never_grants_access():
    with pytest.raises(AuthorizationError):
        AdminGate(access_code="").authorize("")


def test_submission_metrics(monkeypatch):
    calls = []
    monkeypatch.setattr(handlers_registration.metrics, "inc", lambda name, value=1: calls.append(name))
    monkeypatch.setattr(handlers_registration.metrics, "gauge", lambda name, value: calls.append(name))

    async def _run() -> None:
        context = _ctx(MemoryStorage())
        flow = _flow(FakeExtractor([_extracted(readable=False), _extracted(dob="2015-01-01")]))
        await _to_capture(flow, context)
        await flow.extract_document(context, image=b"img")
        await flow.extract_document(context, image=b"img")
        await flow.confirm_extraction(context)
        result = await flow.submit(context)
        assert result["decision"]["is_eligible"] is False

    asyncio.run(_run())
    assert calls == [
        "registration.quality_rejected",
        "registration.submitted",
        "registration.ineligible",
        "registration.store_size",
    ]


def test_parse_supplemental_message():
    assert parse_supplemental("4, university, Employed, YES") == {
        "household_size": 4,
        "education_level": "University",
        "employment_status": "Employed",
        "has_financial_dependents": True,
    }
    assert parse_supplemental("four, University, Employed, yes") is None
    assert parse_supplemental("4, Kindergarten, Employed, yes") is None
    assert parse_supplemental("4, University, Employed") is None
