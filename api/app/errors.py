"""Domain errors raised by the signing workflow.

Each error carries a short machine code (``error``) and an optional
human-readable ``detail``. ``main.py`` maps them to HTTP responses so the
routers and services never build status codes by hand.
"""
from typing import Optional


class SigningError(Exception):
    status_code = 400

    def __init__(self, code: str, detail: Optional[str] = None):
        super().__init__(detail or code)
        self.code = code
        self.detail = detail

    def to_dict(self) -> dict:
        body = {"error": self.code}
        if self.detail:
            body["detail"] = self.detail
        return body


class ValidationFailed(SigningError):
    status_code = 400


class Forbidden(SigningError):
    status_code = 403


class NotFound(SigningError):
    status_code = 404


class StateConflict(SigningError):
    """Signing order or lock violations. Not transient, do not retry blindly."""
    status_code = 409


class DocumentLoadError(SigningError):
    status_code = 422


class PasswordRequired(DocumentLoadError):
    """Recoverable: resubmit with the right password.

    ``detail`` is ``password_incorrect`` when a password was supplied but rejected.
    """
    status_code = 423

    def __init__(self, detail: Optional[str] = None):
        super().__init__("password_required", detail)


class LoadFailed(DocumentLoadError):
    """Terminal for this attempt."""
    status_code = 422

    def __init__(self, detail: str):
        super().__init__("load_failed", (detail or "unknown")[:200])


class AssemblyFailed(SigningError):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__("assembly_failed", (detail or "unknown")[:200])
