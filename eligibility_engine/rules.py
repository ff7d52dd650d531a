from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from .models import ApplicantClaim, IdType, Nationality


class ReviewRule(Protocol):
    """Contract for claim-driven manual verification rules."""

    def review_reason(self, claim: ApplicantClaim) -> str | None:
        ...


@dataclass(frozen=True)
class DocumentVerificationRule:
    """Flags a nationality/document pair whose validity cannot be checked automatically."""

    nationality: Nationality
    id_type: IdType
    reason: str

    def review_reason(self, claim: ApplicantClaim) -> str | None:
        if claim.nationality == self.nationality and claim.id_type == self.id_type:
            return self.reason
        return None


@dataclass
class ReviewRuleRegistry:
    """Ordered, extensible registry of manual verification rules."""

    _rules: list[ReviewRule] = field(default_factory=list)

    def register(self, rule: ReviewRule) -> None:
        self._rules.append(rule)

    def review_reasons(self, claim: ApplicantClaim) -> list[str]:
        reasons = []
        for rule in self._rules:
            reason = rule.review_reason(claim)
            if reason:
                reasons.append(reason)
        return reasons


SUDANESE_PASSPORT_REASON = "Sudanese Passport entry date requires manual verification (Post-April 2023 rule)."


def build_default_registry() -> ReviewRuleRegistry:
    registry = ReviewRuleRegistry()
    registry.register(DocumentVerificationRule(Nationality.SUDANESE, IdType.PASSPORT, SUDANESE_PASSPORT_REASON))
    return registry
