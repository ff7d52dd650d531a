from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ApplicantClaim, EligibilityDecision, ExtractedRecord
from .rules import ReviewRuleRegistry, build_default_registry

LOW_CONFIDENCE_REASON = "Low confidence scores in data extraction."


class EligibilitySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ELIGIBILITY_", extra="forbid")

    min_age: int = 18
    max_age: int = 60
    confidence_threshold: float = 0.85


def calculate_age(date_of_birth: date, today: date) -> int:
    """Whole years between ``date_of_birth`` and ``today``.

    The naive year difference is decremented when this year's birthday
    has not been reached yet.
    """
    age = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


def name_mismatch(claim: ApplicantClaim, extracted: ExtractedRecord) -> bool:
    claimed = claim.full_name.strip().casefold()
    if not claimed:
        return False
    return claimed != extracted.full_name.strip().casefold()


@dataclass
class EligibilityEvaluator:
    settings: EligibilitySettings = field(default_factory=EligibilitySettings)
    review_rules: ReviewRuleRegistry = field(default_factory=build_default_registry)

    def evaluate(
        self,
        claim: ApplicantClaim,
        extracted: ExtractedRecord,
        *,
        today: date | None = None,
    ) -> EligibilityDecision:
        today = today or datetime.now(timezone.utc).date()
        reasons: list[str] = []
        is_eligible = True
        needs_human_review = False

        age = calculate_age(extracted.date_of_birth, today)
        if age < self.settings.min_age or age > self.settings.max_age:
            is_eligible = False
            reasons.append(
                f"Out of age range ({self.settings.min_age}-{self.settings.max_age}). Detected age: {age}"
            )

        if any(score < self.settings.confidence_threshold for score in extracted.confidence.as_tuple()):
            needs_human_review = True
            reasons.append(LOW_CONFIDENCE_REASON)

        review_reasons = self.review_rules.review_reasons(claim)
        if review_reasons:
            needs_human_review = True
            reasons.extend(review_reasons)

        return EligibilityDecision(
            is_eligible=is_eligible,
            needs_human_review=needs_human_review,
            reasons=tuple(reasons),
        )


def evaluate(claim: ApplicantClaim, extracted: ExtractedRecord, today: date | None = None) -> EligibilityDecision:
    return EligibilityEvaluator().evaluate(claim, extracted, today=today)
