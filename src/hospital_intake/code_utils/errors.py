"""Error taxonomy for the intake engine.

Each error carries a short message that is safe to show to a patient or to
hospital staff. ``retryable`` tells the caller whether repeating the whole
request can succeed.
"""


class IntakeError(RuntimeError):
    """Base class for every error raised by the intake engine."""

    user_message = "The request could not be completed."
    retryable = False

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.user_message)
        self.detail = detail or self.user_message


class InvalidInput(IntakeError):
    user_message = "The submitted request is invalid."


class ClassificationUnavailable(IntakeError):
    user_message = "Document analysis is unavailable right now."


class EntryNotFound(IntakeError):
    user_message = "Queue entry not found."


class NotInQueueState(IntakeError):
    user_message = "This entry is no longer waiting in the queue."


class MissingLocation(IntakeError):
    user_message = "Your location is not set. Please update your profile with your state."


class RegionMismatch(IntakeError):
    user_message = "The selected hospital is outside your region."


class NoHospitalInRegion(IntakeError):
    user_message = "No hospitals were found in your region."


class AlertNotFound(IntakeError):
    user_message = "Emergency alert not found."


class StorageUnavailable(IntakeError):
    user_message = "The service is temporarily unavailable. Please try again."
    retryable = True
