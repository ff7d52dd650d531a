"""Per-stage session payloads for the registration FSM.

Each FSM state carries exactly the data collected up to that stage. The
payload is stored in the FSM data under ``"session"`` and discriminated by
its ``stage`` field, which is the lowercase name of the matching
``RegistrationFSM`` state.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from aiogram.fsm.state import State
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from bot.fsm_states import RegistrationFSM
from eligibility_engine.models import (
    ApplicantClaim,
    EligibilityDecision,
    ExtractedRecord,
    SupplementalInfo,
)


class StageModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def state_name(self) -> str:
        return self.stage.upper()

    @property
    def fsm_state(self) -> State:
        return getattr(RegistrationFSM, self.state_name)


class CollectingClaimStage(StageModel):
    stage: Literal["collecting_claim"] = "collecting_claim"
    claim: ApplicantClaim = Field(default_factory=ApplicantClaim)


class CapturingDocumentStage(StageModel):
    stage: Literal["capturing_document"] = "capturing_document"
    claim: ApplicantClaim


class ExtractingStage(StageModel):
    stage: Literal["extracting"] = "extracting"
    claim: ApplicantClaim
    attempt_id: str
    source: Literal["capture", "file"] = "capture"


class ReviewingExtractionStage(StageModel):
    stage: Literal["reviewing_extraction"] = "reviewing_extraction"
    claim: ApplicantClaim
    extracted: ExtractedRecord


class CollectingSupplementalStage(StageModel):
    stage: Literal["collecting_supplemental"] = "collecting_supplemental"
    claim: ApplicantClaim
    extracted: ExtractedRecord
    supplemental: SupplementalInfo = Field(default_factory=SupplementalInfo)


class SubmittedStage(StageModel):
    stage: Literal["submitted"] = "submitted"
    record_id: str
    decision: EligibilityDecision


class DashboardStage(StageModel):
    stage: Literal["dashboard"] = "dashboard"


SessionStage = Annotated[
    Union[
        CollectingClaimStage,
        CapturingDocumentStage,
        ExtractingStage,
        ReviewingExtractionStage,
        CollectingSupplementalStage,
        SubmittedStage,
        DashboardStage,
    ],
    Field(discriminator="stage"),
]

_STAGE_ADAPTER: TypeAdapter[SessionStage] = TypeAdapter(SessionStage)


def load_stage(raw: dict[str, Any] | None) -> SessionStage:
    if not raw:
        return CollectingClaimStage()
    return _STAGE_ADAPTER.validate_python(raw)


def dump_stage(stage: SessionStage) -> dict[str, Any]:
    return stage.model_dump(mode="json")
