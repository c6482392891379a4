"""Exceptions raised by the tournament and analytics model layer."""


class IllHubError(Exception):
    """Base exception for all application errors.

    Routes catch this single class and turn it into a JSON error body; the
    ``status_code`` attribute selects the HTTP status.
    """

    status_code = 400

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        body = {'error': self.message}
        if self.details is not None:
            body['details'] = self.details
        return body


class ValidationError(IllHubError):
    """Raised when input to a model operation is malformed or out of range."""


class InvalidTransitionError(ValidationError):
    """Raised when a status change is not allowed from the current status."""


class CapacityError(ValidationError):
    """Raised when a tournament has no free participant slots."""

    status_code = 409


class DuplicateRegistrationError(IllHubError):
    """Raised when a player id is already registered for a tournament."""

    status_code = 409


class NotFoundError(IllHubError):
    """Raised when a referenced tournament, phase, division, match or participant is absent."""

    status_code = 404


class ConcurrencyConflict(IllHubError):
    """Raised when a tournament was modified by someone else since it was read."""

    status_code = 409


class UpstreamFetchError(IllHubError):
    """Raised when the match-data API fails or returns an unparseable payload.

    ``partial`` holds any games collected before the failure so callers can
    show an incomplete window instead of nothing.
    """

    status_code = 502

    def __init__(self, message, details=None, status=None, response=None, partial=None):
        super().__init__(message, details)
        self.status = status
        self.response = response
        self.partial = partial or []

    def to_dict(self):
        return {
            'error': self.message,
            'details': self.details,
            'response': self.response,
            'status': self.status or 500,
        }
