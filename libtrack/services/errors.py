from typing import Any


class ServiceError(Exception):
    """A request rejected by a service rule. Carries the HTTP status and extra envelope fields."""

    def __init__(self, status_code: int, message: str, **extras: Any):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.extras = extras
