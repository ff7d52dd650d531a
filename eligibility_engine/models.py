from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ClaimValidationError


class RegistrationBaseModel(BaseModel):
    """Base model with forbidden unknown fields."""

    model_config = ConfigDict(extra="forbid")


class FrozenRegistrationModel(BaseModel):
    """Immutable model that also accepts the recognition service's camelCase keys."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class Nationality(str, Enum):
    EGYPTIAN = "Egyptian"
    SUDANESE = "Sudanese"
    SYRIAN = "Syrian"
    OTHER = "Other"


class IdType(str, Enum):
    EGYPTIAN_ID = "Egyptian ID"
    UNHCR_ID = "UNHCR ID"
    PASSPORT = "Passport"


class EducationLevel(str, Enum):
    PRIMARY = "Primary"
    SECONDARY = "Secondary"
    UNIVERSITY = "University"
    POST_GRADUATE = "Post-graduate"


class EmploymentStatus(str, Enum):
    EMPLOYED = "Employed"
    UNEMPLOYED = "Unemployed"
    STUDENT = "Student"
    RETIRED = "Retired"


class ApplicantClaim(RegistrationBaseModel):
    full_name: str = ""
    nationality: Nationality = Nationality.EGYPTIAN
    id_type: IdType = IdType.EGYPTIAN_ID

    def validated(self) -> ApplicantClaim:
        full_name = self.full_name.strip()
        if not full_name:
            raise ClaimValidationError("Please enter your full name.")
        return self.model_copy(update={"full_name": full_name})


class ConfidenceScores(FrozenRegistrationModel):
    full_name: float = Field(alias="fullName", ge=0.0, le=1.0)
    date_of_birth: float = Field(alias="dob", ge=0.0, le=1.0)
    document_number: float = Field(alias="idNumber", ge=0.0, le=1.0)

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.full_name, self.date_of_birth, self.document_number)


class QualityCheck(FrozenRegistrationModel):
    is_clear: bool = Field(alias="isClear")
    is_complete: bool = Field(alias="isComplete")
    is_readable: bool = Field(alias="isReadable")
    reason: str | None = None


class ExtractedRecord(FrozenRegistrationModel):
    full_name: str = Field(alias="fullName")
    date_of_birth: date = Field(alias="dob")
    document_number: str = Field(alias="idNumber")
    document_class: str = Field(alias="documentType")
    confidence: ConfidenceScores = Field(alias="confidenceScores")
    quality_check: QualityCheck = Field(alias="qualityCheck")


class SupplementalInfo(RegistrationBaseModel):
    household_size: int = Field(default=1, ge=1)
    education_level: EducationLevel = EducationLevel.UNIVERSITY
    employment_status: EmploymentStatus = EmploymentStatus.UNEMPLOYED
    has_financial_dependents: bool = False


class EligibilityDecision(FrozenRegistrationModel):
    is_eligible: bool
    needs_human_review: bool
    reasons: tuple[str, ...] = ()


class RegistrationRecord(FrozenRegistrationModel):
    id: str = Field(pattern=r"^TR-[A-Z0-9]{9}$")
    claim: ApplicantClaim
    extracted: ExtractedRecord
    supplemental: SupplementalInfo
    decision: EligibilityDecision
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
