class ClientError(Exception):
    """Malformed or missing input, detected before any side effect."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

class UpstreamError(Exception):
    """The primary inference or store call failed; the cause goes to diagnostics only."""

    def __init__(self, message: str = "upstream service failed"):
        super().__init__(message)
        self.message = message
