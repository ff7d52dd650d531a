from __future__ import annotations

import asyncio
import hmac
import io
import logging
import weakref
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol
from uuid import uuid4

from aiogram import F, Router
from aiogram.filters import Command, CommandObject, CommandStart
from aiogram.fsm.context import FSMContext
from aiogram.fsm.storage.base import StorageKey
from aiogram.types import BufferedInputFile, CallbackQuery, Message, ReplyKeyboardRemove
from pydantic import ValidationError

from bot import metrics
from bot.fsm_states import RegistrationFSM
from bot.keyboards.registration_kb import (
    ABANDON_TEXT,
    BACK_CALLBACK,
    BACK_TEXT,
    CONFIRM_CALLBACK,
    CONTINUE_TEXT,
    EDUCATION_LEVELS,
    EMPLOYMENT_STATUSES,
    ID_TYPES,
    NATIONALITIES,
    NEW_REGISTRATION_TEXT,
    capture_keyboard,
    claim_keyboard,
    extracting_keyboard,
    review_keyboard,
    submitted_keyboard,
    supplemental_keyboard,
)
from bot.log_config import mask_sensitive
from bot.session import (
    CapturingDocumentStage,
    CollectingClaimStage,
    CollectingSupplementalStage,
    DashboardStage,
    ExtractingStage,
    ReviewingExtractionStage,
    SessionStage,
    SubmittedStage,
    dump_stage,
    load_stage,
)
from eligibility_engine.audit import AuditLogger
from eligibility_engine.engine import EligibilityEvaluator, name_mismatch
from eligibility_engine.exceptions import (
    AuthorizationError,
    ClaimValidationError,
    DuplicateDocumentError,
    ExtractionFailureError,
    ExtractionInProgressError,
    InvalidTransitionError,
    QualityRejectionError,
    RegistrationError,
    RegistrationValidationError,
)
from eligibility_engine.models import (
    ApplicantClaim,
    ExtractedRecord,
    IdType,
    RegistrationRecord,
    SupplementalInfo,
)
from eligibility_engine.reporting import build_summary, export_csv
from eligibility_engine.store import RegistrationStore

logger = logging.getLogger(__name__)

STALE_ATTEMPT_MESSAGE = "This document result is no longer current and was discarded."


class DocumentExtractor(Protocol):
    async def extract(self, image: bytes, id_type: IdType) -> ExtractedRecord: ...


@dataclass(slots=True)
class AdminGate:
    access_code: str

    def authorize(self, candidate: str) -> None:
        if not self.access_code or not hmac.compare_digest(candidate.encode(), self.access_code.encode()):
            raise AuthorizationError("administrator access code mismatch")


@dataclass(slots=True)
class RegistrationFlow:
    extractor: DocumentExtractor
    store: RegistrationStore
    admin_gate: AdminGate
    evaluator: EligibilityEvaluator = field(default_factory=EligibilityEvaluator)
    audit_logger: AuditLogger | None = None
    extraction_timeout_sec: float = 30.0
    _locks: weakref.WeakValueDictionary[StorageKey, asyncio.Lock] = field(
        default_factory=weakref.WeakValueDictionary, init=False, repr=False
    )

    @staticmethod
    def _preview(claim: ApplicantClaim, extracted: ExtractedRecord) -> str:
        lines = [
            "Please verify the extracted details:",
            f"Name: {extracted.full_name}",
            f"Date of birth: {extracted.date_of_birth.isoformat()}",
            f"Document number: {mask_sensitive(extracted.document_number)}",
            f"Document type: {extracted.document_class}",
        ]
        if name_mismatch(claim, extracted):
            lines.append(f"⚠ The name on the document differs from the name you entered ({claim.full_name}).")
        return "\n".join(lines)

    def _lock(self, state: FSMContext) -> asyncio.Lock:
        # Entries live only while some operation on the session holds or awaits the lock.
        return self._locks.setdefault(state.key, asyncio.Lock())

    @staticmethod
    async def _load(state: FSMContext) -> tuple[dict[str, Any], SessionStage]:
        data = await state.get_data()
        return data, load_stage(data.get("session"))

    @staticmethod
    async def _enter(state: FSMContext, data: dict[str, Any], stage: SessionStage, **extra: Any) -> dict[str, Any]:
        data["session"] = dump_stage(stage)
        await state.set_data(data)
        await state.set_state(stage.fsm_state)
        logger.info("FSM step entered: %s | correlation_id=%s", stage.stage, data.get("correlation_id"))
        return {"state": stage.state_name, **extra}

    @staticmethod
    def _refuse(stage: SessionStage, exc: RegistrationError) -> dict[str, Any]:
        return {"state": stage.state_name, "error": exc.code, "message": exc.user_message}

    @classmethod
    async def _fail_to(
        cls,
        state: FSMContext,
        data: dict[str, Any],
        stage: SessionStage,
        exc: RegistrationError,
    ) -> dict[str, Any]:
        logger.info("registration step failed: %s | correlation_id=%s", exc.code, data.get("correlation_id"))
        return await cls._enter(state, data, stage, error=exc.code, message=exc.user_message)

    async def _restart(self, state: FSMContext) -> dict[str, Any]:
        correlation_id = str(uuid4())
        data: dict[str, Any] = {"correlation_id": correlation_id}
        return await self._enter(state, data, CollectingClaimStage(), correlation_id=correlation_id)

    async def start(self, state: FSMContext) -> dict[str, Any]:
        async with self._lock(state):
            return await self._restart(state)

    async def update_claim(
        self,
        state: FSMContext,
        *,
        full_name: str | None = None,
        nationality: str | None = None,
        id_type: str | None = None,
    ) -> dict[str, Any]:
        updates = {
            key: value
            for key, value in {"full_name": full_name, "nationality": nationality, "id_type": id_type}.items()
            if value is not None
        }
        async with self._lock(state):
            data, stage = await self._load(state)
            if not isinstance(stage, CollectingClaimStage):
                return self._refuse(stage, InvalidTransitionError())
            try:
                claim = ApplicantClaim.model_validate({**stage.claim.model_dump(), **updates})
            except ValidationError:
                return self._refuse(
                    stage, ClaimValidationError("Please choose a nationality and ID type from the list.")
                )
            result = await self._enter(state, data, CollectingClaimStage(claim=claim))
        result["claim"] = claim.model_dump(mode="json")
        return result

    async def submit_claim(self, state: FSMContext) -> dict[str, Any]:
        async with self._lock(state):
            data, stage = await self._load(state)
            if not isinstance(stage, CollectingClaimStage):
                return self._refuse(stage, InvalidTransitionError())
            try:
                claim = stage.claim.validated()
            except ClaimValidationError as exc:
                return self._refuse(stage, exc)
            return await self._enter(state, data, CapturingDocumentStage(claim=claim))

    async def attach_image(
        self,
        state: FSMContext,
        *,
        image: bytes,
        source: Literal["capture", "file"] = "capture",
    ) -> dict[str, Any]:
        async with self._lock(state):
            data, stage = await self._load(state)
            if isinstance(stage, ExtractingStage):
                return self._refuse(stage, ExtractionInProgressError())
            if not isinstance(stage, CapturingDocumentStage):
                return self._refuse(stage, InvalidTransitionError())
            if not image:
                return self._refuse(stage, RegistrationValidationError("Please capture or upload a photo of your ID."))

            attempt_id = uuid4().hex
            extracting = ExtractingStage(claim=stage.claim, attempt_id=attempt_id, source=source)
            return await self._enter(state, data, extracting, attempt_id=attempt_id)

    async def run_extraction(self, state: FSMContext, *, image: bytes, attempt_id: str) -> dict[str, Any]:
        _, stage = await self._load(state)
        if not isinstance(stage, ExtractingStage) or stage.attempt_id != attempt_id:
            return {"state": stage.state_name, "error": "stale_attempt", "message": STALE_ATTEMPT_MESSAGE}

        try:
            extracted = await asyncio.wait_for(
                self.extractor.extract(image, stage.claim.id_type),
                timeout=self.extraction_timeout_sec,
            )
        except Exception as exc:
            logger.warning("document extraction failed | attempt_id=%s: %s", attempt_id, exc, exc_info=True)
            return await self.complete_extraction(state, attempt_id=attempt_id, extracted=None)
        return await self.complete_extraction(state, attempt_id=attempt_id, extracted=extracted)

    async def complete_extraction(
        self,
        state: FSMContext,
        *,
        attempt_id: str,
        extracted: ExtractedRecord | None,
    ) -> dict[str, Any]:
        """Apply the outcome of an extraction attempt.

        ``extracted=None`` means the collaborator failed. Outcomes for an
        attempt that is no longer the session's current one are discarded.
        """
        async with self._lock(state):
            data, stage = await self._load(state)
            if not isinstance(stage, ExtractingStage) or stage.attempt_id != attempt_id:
                logger.info("stale extraction discarded | attempt_id=%s", attempt_id)
                return {"state": stage.state_name, "error": "stale_attempt", "message": STALE_ATTEMPT_MESSAGE}

            capture = CapturingDocumentStage(claim=stage.claim)
            if extracted is None:
                metrics.inc("registration.extraction_failed")
                return await self._fail_to(state, data, capture, ExtractionFailureError())

            if not extracted.quality_check.is_readable:
                metrics.inc("registration.quality_rejected")
                return await self._fail_to(state, data, capture, QualityRejectionError(extracted.quality_check.reason))

            if self.store.is_duplicate(extracted.document_number):
                metrics.inc("registration.duplicate")
                return await self._fail_to(state, data, capture, DuplicateDocumentError(extracted.document_number))

            review = ReviewingExtractionStage(claim=stage.claim, extracted=extracted)
            return await self._enter(
                state,
                data,
                review,
                preview=self._preview(stage.claim, extracted),
                name_mismatch=name_mismatch(stage.claim, extracted),
            )

    async def extract_document(
        self,
        state: FSMContext,
        *,
        image: bytes,
        source: Literal["capture", "file"] = "capture",
    ) -> dict[str, Any]:
        attached = await self.attach_image(state, image=image, source=source)
        if "error" in attached:
            return attached
        return await self.run_extraction(state, image=image, attempt_id=attached["attempt_id"])

    async def abandon_extraction(self, state: FSMContext) -> dict[str, Any]:
        async with self._lock(state):
            data, stage = await self._load(state)
            if not isinstance(stage, ExtractingStage):
                return self._refuse(stage, InvalidTransitionError())
            return await self._enter(state, data, CapturingDocumentStage(claim=stage.claim))

    async def confirm_extraction(self, state: FSMContext) -> dict[str, Any]:
        async with self._lock(state):
            data, stage = await self._load(state)
            if not isinstance(stage, ReviewingExtractionStage):
                return self._refuse(stage, InvalidTransitionError())
            supplemental = CollectingSupplementalStage(claim=stage.claim, extracted=stage.extracted)
            return await self._enter(state, data, supplemental)

    async def update_supplemental(self, state: FSMContext, **fields: Any) -> dict[str, Any]:
        async with self._lock(state):
            data, stage = await self._load(state)
            if not isinstance(stage, CollectingSupplementalStage):
                return self._refuse(stage, InvalidTransitionError())
            try:
                supplemental = SupplementalInfo.model_validate({**stage.supplemental.model_dump(), **fields})
            except ValidationError:
                return self._refuse(
                    stage, RegistrationValidationError("Please check the additional information and try again.")
                )
            result = await self._enter(state, data, stage.model_copy(update={"supplemental": supplemental}))
        result["supplemental"] = supplemental.model_dump(mode="json")
        return result

    async def submit(self, state: FSMContext, *, supplemental: SupplementalInfo | None = None) -> dict[str, Any]:
        async with self._lock(state):
            data, stage = await self._load(state)
            if not isinstance(stage, CollectingSupplementalStage):
                return self._refuse(stage, InvalidTransitionError())
            return await self._submit(state, data, stage, supplemental or stage.supplemental)

    async def _submit(
        self,
        state: FSMContext,
        data: dict[str, Any],
        stage: CollectingSupplementalStage,
        supplemental: SupplementalInfo,
    ) -> dict[str, Any]:
        document_number = stage.extracted.document_number
        capture = CapturingDocumentStage(claim=stage.claim)
        if self.store.is_duplicate(document_number):
            metrics.inc("registration.duplicate")
            return await self._fail_to(state, data, capture, DuplicateDocumentError(document_number))

        decision = self.evaluator.evaluate(stage.claim, stage.extracted)
        record = RegistrationRecord(
            id=self.store.new_record_id(),
            claim=stage.claim,
            extracted=stage.extracted,
            supplemental=supplemental,
            decision=decision,
        )
        try:
            self.store.append(record)
        except DuplicateDocumentError as exc:
            metrics.inc("registration.duplicate")
            return await self._fail_to(state, data, capture, exc)

        if self.audit_logger is not None:
            self.audit_logger.create_record(
                correlation_id=data.get("correlation_id", ""),
                record_id=record.id,
                document_number=document_number,
                decision=decision,
                name_mismatch=name_mismatch(stage.claim, stage.extracted),
            )
        metrics.inc("registration.submitted")
        if decision.needs_human_review:
            metrics.inc("registration.needs_review")
        if not decision.is_eligible:
            metrics.inc("registration.ineligible")
        metrics.gauge("registration.store_size", len(self.store))

        submitted = SubmittedStage(record_id=record.id, decision=decision)
        return await self._enter(
            state,
            data,
            submitted,
            record_id=record.id,
            decision=decision.model_dump(mode="json"),
        )

    async def new_registration(self, state: FSMContext) -> dict[str, Any]:
        async with self._lock(state):
            _, stage = await self._load(state)
            if not isinstance(stage, SubmittedStage):
                return self._refuse(stage, InvalidTransitionError())
            return await self._restart(state)

    async def go_back(self, state: FSMContext) -> dict[str, Any]:
        async with self._lock(state):
            data, stage = await self._load(state)
            if isinstance(stage, CapturingDocumentStage):
                previous: SessionStage = CollectingClaimStage(claim=stage.claim)
            elif isinstance(stage, ReviewingExtractionStage):
                previous = CapturingDocumentStage(claim=stage.claim)
            elif isinstance(stage, CollectingSupplementalStage):
                previous = ReviewingExtractionStage(claim=stage.claim, extracted=stage.extracted)
            else:
                return self._refuse(stage, InvalidTransitionError())

            extra: dict[str, Any] = {}
            if isinstance(previous, ReviewingExtractionStage):
                extra["preview"] = self._preview(previous.claim, previous.extracted)
                extra["name_mismatch"] = name_mismatch(previous.claim, previous.extracted)
            return await self._enter(state, data, previous, **extra)

    async def open_dashboard(self, state: FSMContext, *, access_code: str) -> dict[str, Any]:
        async with self._lock(state):
            data, stage = await self._load(state)
            try:
                self.admin_gate.authorize(access_code)
            except AuthorizationError as exc:
                logger.warning("dashboard access denied | correlation_id=%s", data.get("correlation_id"))
                return self._refuse(stage, exc)
            summary = build_summary(self.store.snapshot())
            return await self._enter(state, data, DashboardStage(), summary=summary.model_dump())

    async def export_dashboard(self, state: FSMContext) -> dict[str, Any]:
        _, stage = await self._load(state)
        if not isinstance(stage, DashboardStage):
            return self._refuse(stage, InvalidTransitionError())
        return {"state": stage.state_name, "csv": export_csv(self.store.snapshot())}

    async def close_dashboard(self, state: FSMContext) -> dict[str, Any]:
        async with self._lock(state):
            _, stage = await self._load(state)
            if not isinstance(stage, DashboardStage):
                return self._refuse(stage, InvalidTransitionError())
            return await self._restart(state)


def parse_supplemental(text: str) -> dict[str, Any] | None:
    """Parse ``household size, education, employment, dependents (yes/no)``."""
    chunks = [c.strip() for c in text.split(",")]
    if len(chunks) != 4 or not chunks[0].isdigit():
        return None
    education = next((e for e in EDUCATION_LEVELS if e.lower() == chunks[1].lower()), None)
    employment = next((e for e in EMPLOYMENT_STATUSES if e.lower() == chunks[2].lower()), None)
    dependents = chunks[3].lower()
    if education is None or employment is None or dependents not in {"yes", "no"}:
        return None
    return {
        "household_size": int(chunks[0]),
        "education_level": education,
        "employment_status": employment,
        "has_financial_dependents": dependents == "yes",
    }


def _summary_text(summary: dict[str, Any]) -> str:
    lines = [
        "Registration dashboard",
        f"• Total: {summary['total']}",
        f"• Eligible: {summary['eligible']}",
        f"• Review required: {summary['needs_review']}",
        f"• Rejected: {summary['rejected']}",
    ]
    for nationality, count in summary["by_nationality"].items():
        lines.append(f"• {nationality}: {count}")
    lines.append("Commands: /export, /logout")
    return "\n".join(lines)


def _decision_text(decision: dict[str, Any], record_id: str) -> str:
    if not decision["is_eligible"]:
        status = "Not eligible"
    elif decision["needs_human_review"]:
        status = "Pending manual review"
    else:
        status = "Eligible"
    lines = [f"Thank you! Your registration {record_id} was submitted ✅", f"Status: {status}"]
    lines.extend(f"• {reason}" for reason in decision["reasons"])
    return "\n".join(lines)


async def _download(message: Message, file_id: str) -> bytes:
    file = await message.bot.get_file(file_id)
    buf = io.BytesIO()
    await message.bot.download(file, destination=buf)
    return buf.getvalue()


def create_registration_router(flow: RegistrationFlow) -> Router:
    router = Router(name="trainee_registration")

    @router.message(CommandStart())
    async def cmd_start(message: Message, state: FSMContext) -> None:
        await flow.start(state)
        await message.answer(
            "Welcome! Please type your full name, then pick your nationality and ID type.",
            reply_markup=claim_keyboard(),
        )

    @router.message(Command("admin"))
    async def cmd_admin(message: Message, state: FSMContext, command: CommandObject) -> None:
        result = await flow.open_dashboard(state, access_code=(command.args or "").strip())
        if "error" in result:
            await message.answer(result["message"])
            return
        await message.answer(_summary_text(result["summary"]), reply_markup=ReplyKeyboardRemove())

    @router.message(RegistrationFSM.DASHBOARD, Command("export"))
    async def cmd_export(message: Message, state: FSMContext) -> None:
        result = await flow.export_dashboard(state)
        document = BufferedInputFile(result["csv"].encode("utf-8"), filename="trainees.csv")
        await message.answer_document(document)

    @router.message(RegistrationFSM.DASHBOARD, Command("logout"))
    async def cmd_logout(message: Message, state: FSMContext) -> None:
        await flow.close_dashboard(state)
        await message.answer("Logged out. Please type your full name to register.", reply_markup=claim_keyboard())

    @router.message(F.text == BACK_TEXT)
    async def on_back(message: Message, state: FSMContext) -> None:
        result = await flow.go_back(state)
        if "error" in result:
            await message.answer(result["message"])
            return
        if result["state"] == "COLLECTING_CLAIM":
            await message.answer("You can edit your details and press Continue.", reply_markup=claim_keyboard())
        elif result["state"] == "REVIEWING_EXTRACTION":
            await message.answer(result["preview"], reply_markup=review_keyboard())

    @router.message(RegistrationFSM.COLLECTING_CLAIM, F.text)
    async def on_claim(message: Message, state: FSMContext) -> None:
        text = (message.text or "").strip()
        if text == CONTINUE_TEXT:
            result = await flow.submit_claim(state)
            if "error" in result:
                await message.answer(result["message"], reply_markup=claim_keyboard())
                return
            await message.answer(
                "Send a photo of your ID or attach it as a file.",
                reply_markup=capture_keyboard(),
            )
            return

        if text in NATIONALITIES:
            result = await flow.update_claim(state, nationality=text)
        elif text in ID_TYPES:
            result = await flow.update_claim(state, id_type=text)
        else:
            result = await flow.update_claim(state, full_name=text)
        if "error" in result:
            await message.answer(result["message"], reply_markup=claim_keyboard())
            return
        claim = result["claim"]
        await message.answer(
            f"Name: {claim['full_name'] or '—'}\nNationality: {claim['nationality']}\nID type: {claim['id_type']}",
            reply_markup=claim_keyboard(),
        )

    async def _handle_image(message: Message, state: FSMContext, file_id: str, source: Literal["capture", "file"]) -> None:
        image = await _download(message, file_id)
        await message.answer("Processing your document…", reply_markup=extracting_keyboard())
        result = await flow.extract_document(state, image=image, source=source)
        if result.get("error") == "stale_attempt":
            return
        if "error" in result:
            await message.answer(result["message"], reply_markup=capture_keyboard())
            return
        await message.answer(result["preview"], reply_markup=review_keyboard())

    @router.message(RegistrationFSM.CAPTURING_DOCUMENT, F.photo)
    async def on_photo(message: Message, state: FSMContext) -> None:
        await _handle_image(message, state, message.photo[-1].file_id, "capture")

    @router.message(RegistrationFSM.CAPTURING_DOCUMENT, F.document)
    async def on_file(message: Message, state: FSMContext) -> None:
        await _handle_image(message, state, message.document.file_id, "file")

    @router.message(RegistrationFSM.CAPTURING_DOCUMENT)
    async def on_capture_other(message: Message) -> None:
        await message.answer("At this step please send a photo or file of your ID.", reply_markup=capture_keyboard())

    @router.message(RegistrationFSM.EXTRACTING, F.text == ABANDON_TEXT)
    async def on_abandon(message: Message, state: FSMContext) -> None:
        await flow.abandon_extraction(state)
        await message.answer("Okay, send another photo of your ID.", reply_markup=capture_keyboard())

    @router.message(RegistrationFSM.EXTRACTING)
    async def on_extracting_other(message: Message) -> None:
        await message.answer(ExtractionInProgressError.user_message, reply_markup=extracting_keyboard())

    @router.callback_query(RegistrationFSM.REVIEWING_EXTRACTION, F.data.in_({CONFIRM_CALLBACK, BACK_CALLBACK}))
    async def on_review_action(callback: CallbackQuery, state: FSMContext) -> None:
        if callback.data == CONFIRM_CALLBACK:
            await flow.confirm_extraction(state)
            await callback.message.answer(
                "Almost done! Send: household size, education ("
                + "/".join(EDUCATION_LEVELS)
                + "), employment ("
                + "/".join(EMPLOYMENT_STATUSES)
                + "), financial dependents (yes/no).\nExample: 4, University, Unemployed, yes",
                reply_markup=supplemental_keyboard(),
            )
        else:
            await flow.go_back(state)
            await callback.message.answer("Send a new photo of your ID.", reply_markup=capture_keyboard())
        await callback.answer()

    @router.message(RegistrationFSM.COLLECTING_SUPPLEMENTAL, F.text)
    async def on_supplemental(message: Message, state: FSMContext) -> None:
        fields = parse_supplemental(message.text or "")
        if fields is None:
            await message.answer("Please use the format: 4, University, Unemployed, yes")
            return
        updated = await flow.update_supplemental(state, **fields)
        if "error" in updated:
            await message.answer(updated["message"])
            return
        result = await flow.submit(state)
        if "error" in result:
            await message.answer(result["message"], reply_markup=capture_keyboard())
            return
        await message.answer(_decision_text(result["decision"], result["record_id"]), reply_markup=submitted_keyboard())

    @router.message(RegistrationFSM.SUBMITTED, F.text == NEW_REGISTRATION_TEXT)
    async def on_new_registration(message: Message, state: FSMContext) -> None:
        await flow.new_registration(state)
        await message.answer("Please type the full name of the next trainee.", reply_markup=claim_keyboard())

    @router.callback_query(F.data.in_({CONFIRM_CALLBACK, BACK_CALLBACK}))
    async def on_stale_review(callback: CallbackQuery) -> None:
        await callback.answer("This button is no longer active.", show_alert=True)

    return router
