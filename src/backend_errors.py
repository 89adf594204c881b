"""Errors raised by the language-model and image-generation backend clients."""


class BackendError(Exception):
    """A backend call failed (non-2xx response or a backend-reported error)."""

    def __init__(self, message: str, endpoint: str | None = None):
        super().__init__(message)
        self.endpoint = endpoint


class BackendUnreachableError(BackendError):
    """The backend refused the connection or did not answer in time."""

    def __init__(self, service: str, endpoint: str, detail: str = ""):
        message = f"Cannot connect to {service} at {endpoint}, is the service running?"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, endpoint)
        self.service = service


class MalformedResponseError(BackendError):
    """The backend answered, but the payload could not be parsed or had the wrong shape."""

    def __init__(self, message: str, payload_size: int = 0, endpoint: str | None = None):
        super().__init__(message, endpoint)
        self.payload_size = payload_size


class OperationCancelled(Exception):
    """A backend call was abandoned because its cancellation signal fired."""
    pass
