"""Errors raised by clients of external collaborators."""


class ExternalServiceError(Exception):
    """An external collaborator rejected or failed a call."""

    def __init__(self, service: str, message: str, status_code: int = None):
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service}: {message}")
