class RegistrationError(Exception):
    """Base class for recoverable registration workflow errors."""

    code = "registration_error"
    user_message = "Something went wrong. Please try again."


class RegistrationValidationError(RegistrationError):
    """Raised when user-supplied input fails validation."""

    code = "validation"
    user_message = "Please check your input and try again."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.user_message = message
        super().__init__(self.user_message)


class ClaimValidationError(RegistrationValidationError):
    """Raised when the applicant's claim fails validation."""

    user_message = "Please enter your full name."


class QualityRejectionError(RegistrationError):
    """Raised when the recognition service reports an unreadable document."""

    code = "quality_rejected"

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        self.user_message = f"Image rejected: {reason or 'Please provide a clearer photo of your ID.'}"
        super().__init__(self.user_message)


class DuplicateDocumentError(RegistrationError):
    """Raised when a document number is already present in the store."""

    code = "duplicate"
    user_message = "This ID has been recorded before, please wait for our call"

    def __init__(self, document_number: str) -> None:
        self.document_number = document_number
        super().__init__(self.user_message)


class ExtractionFailureError(RegistrationError):
    """Raised when the extraction collaborator fails or times out."""

    code = "extraction_failed"
    user_message = "Failed to process the document. Please try again."


class AuthorizationError(RegistrationError):
    """Raised when the administrative access code does not match."""

    code = "unauthorized"
    user_message = "Invalid administrator credentials."


class ExtractionInProgressError(RegistrationError):
    """Raised when a second extraction is triggered while one is outstanding."""

    code = "extraction_in_progress"
    user_message = "Your document is still being processed. Please wait."


class InvalidTransitionError(RegistrationError):
    """Raised when an operation is not accepted in the current workflow state."""

    code = "invalid_transition"
    user_message = "This action is not available at the current step."
