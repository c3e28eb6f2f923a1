"""
auth/errors.py -- Error taxonomy for the auth flows.

Every error carries the HTTP-like code and a message that is safe to show to
the client. Flows raise these internally; the flow boundary in auth/flows.py
turns them into an error FlowResult. Anything that is NOT an AuthFlowError is
an unexpected fault: it is logged and replaced with a generic 500.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations


class AuthFlowError(Exception):
    """Base class. Subclasses set the default code; the message is user-visible."""

    code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(AuthFlowError):
    """Missing or malformed input."""

    code = 400


class AuthenticationError(AuthFlowError):
    """Bad credentials or a bad, expired or missing bearer token.

    The message is deliberately uniform so callers cannot enumerate accounts.
    """

    code = 401


class NotFoundError(AuthFlowError):
    code = 404


class InvalidTokenError(NotFoundError):
    """Unknown, expired or already used verification/reset token."""

    code = 400


class ConflictError(AuthFlowError):
    code = 409


class DependencyError(AuthFlowError):
    """An essential collaborator (mail, store) failed."""

    code = 500
