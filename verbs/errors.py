"""Error taxonomy shared by the HTTP layer and the checkout/webhook flows.

Every error carries a caller-safe message and the status code it maps to.
"""


class VerbsError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailed(VerbsError):
    status_code = 400


class InvalidSignature(VerbsError):
    status_code = 400


class Unauthorized(VerbsError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class NotFound(VerbsError):
    status_code = 404


class NotConfigured(VerbsError):
    """A required collaborator or credential is absent (operator fault)."""
    status_code = 500


class UpstreamFailure(VerbsError):
    status_code = 500
