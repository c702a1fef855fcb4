"""Exception types shared by services and routes.

Two families live here:

* ``OperationError`` subclasses are caller-facing.  Each one carries a
  ``kind`` and an HTTP ``status_code`` and is rendered by
  ``receiptgold.api.error_handlers`` as ``{"error": {"kind", "message"}}``.
* ``TransitionError`` subclasses are raised by the reconciliation layer.
  The webhook boundary logs and acknowledges them; the tier-change route
  converts them into ``InternalError``.
"""

from __future__ import annotations


class OperationError(Exception):
    kind = "internal"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class Unauthenticated(OperationError):
    kind = "unauthenticated"
    status_code = 401


class PermissionDenied(OperationError):
    kind = "permission-denied"
    status_code = 403


class InvalidArgument(OperationError):
    kind = "invalid-argument"
    status_code = 400


class NotFound(OperationError):
    kind = "not-found"
    status_code = 404


class InternalError(OperationError):
    kind = "internal"
    status_code = 500


class TransitionError(Exception):
    """A subscription transition could not be applied."""


class UnknownAccountError(TransitionError):
    """No local account could be matched to a provider object."""


class PaymentProviderError(TransitionError):
    """The payment provider could not be reached or returned unusable data."""


class MalformedEventError(TransitionError, ValueError):
    """A verified webhook payload is missing fields its event type requires."""


__all__ = [
    "OperationError",
    "Unauthenticated",
    "PermissionDenied",
    "InvalidArgument",
    "NotFound",
    "InternalError",
    "TransitionError",
    "UnknownAccountError",
    "PaymentProviderError",
    "MalformedEventError",
]
