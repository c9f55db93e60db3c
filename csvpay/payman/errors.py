from __future__ import annotations


class PaymanError(Exception):
    """Failure reported by the Payman agent or its HTTP layer.

    ``str(exc)`` is the verbatim message text; callers classify on it.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class InvalidCredential(PaymanError):
    """The bearer token is malformed, expired or rejected (HTTP 401/403)."""


class NotAuthenticated(Exception):
    """No Payman credential is stored; the operator must run the OAuth flow."""

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message)
