from .audit import AuditLogger, InMemoryAuditSink, RegistrationAuditRecord
from .duplicates import is_duplicate
from .engine import EligibilityEvaluator, EligibilitySettings, calculate_age, evaluate, name_mismatch
from .exceptions import (
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
from .models import (
    ApplicantClaim,
    ConfidenceScores,
    EducationLevel,
    EligibilityDecision,
    EmploymentStatus,
    ExtractedRecord,
    IdType,
    Nationality,
    QualityCheck,
    RegistrationRecord,
    SupplementalInfo,
)
from .reporting import RegistrationSummary, build_summary, export_csv
from .rules import DocumentVerificationRule, ReviewRuleRegistry, build_default_registry
from .store import RegistrationStore

__all__ = [
    "AuditLogger",
    "InMemoryAuditSink",
    "RegistrationAuditRecord",
    "is_duplicate",
    "EligibilityEvaluator",
    "EligibilitySettings",
    "calculate_age",
    "evaluate",
    "name_mismatch",
    "AuthorizationError",
    "ClaimValidationError",
    "DuplicateDocumentError",
    "ExtractionFailureError",
    "ExtractionInProgressError",
    "InvalidTransitionError",
    "QualityRejectionError",
    "RegistrationError",
    "RegistrationValidationError",
    "ApplicantClaim",
    "ConfidenceScores",
    "EducationLevel",
    "EligibilityDecision",
    "EmploymentStatus",
    "ExtractedRecord",
    "IdType",
    "Nationality",
    "QualityCheck",
    "RegistrationRecord",
    "SupplementalInfo",
    "RegistrationSummary",
    "build_summary",
    "export_csv",
    "DocumentVerificationRule",
    "ReviewRuleRegistry",
    "build_default_registry",
    "RegistrationStore",
]
