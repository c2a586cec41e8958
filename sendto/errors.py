class SendToError(Exception):
    """Base class for errors raised by the relay."""


class DiscoveryError(SendToError):
    """The discovery endpoint could not give us the API hosts."""


class AuthError(SendToError):
    """Device registration or token refresh was rejected."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class NotRegisteredError(SendToError):
    """The account has no device registered (or its session is gone)."""


class UpstreamAPIError(SendToError):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"reMarkable API error ({status_code}): {body}")
        self.status_code = status_code
        self.body = body


class BlobNotFoundError(SendToError):
    def __init__(self, key: str):
        super().__init__(f"File with ID {key} not found")
        self.key = key


class DeleteFailure(SendToError):
    """A staged file could not be removed after delivery."""


class EmailRejected(SendToError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class StepFailed(SendToError):
    def __init__(self, step: str, message: str):
        super().__init__(f"Step '{step}' failed: {message}")
        self.step = step
        self.message = message
