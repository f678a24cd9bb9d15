"""Reconciliation error taxonomy."""

from typing import Optional


class ReconciliationError(Exception):
    """Base for every error raised by the reconciliation engine."""


class NormalizationError(ReconciliationError):
    """Webhook body is malformed or carries no recognizable status field."""


class ResolutionError(ReconciliationError):
    """No Order/Return matches any identifier on the event. Callers treat it as informational."""


class TranslationGap(ReconciliationError):
    """Recognized entity but the carrier status code has no mapping."""

    def __init__(self, code, label: Optional[str] = None):
        self.code = code
        self.label = label
        super().__init__(f"Unmapped carrier status {code!r} ({label or 'no label'})")


class TransitionConflict(ReconciliationError):
    """Attempted transition is not allowed from the current state."""

    def __init__(self, current: str, target: str, reason: str = ""):
        self.current = current
        self.target = target
        message = f"Cannot move from {current} to {target}"
        super().__init__(f"{message}: {reason}" if reason else message)


class ExternalCallFailure(ReconciliationError):
    """Carrier or payment-gateway API call failed."""


class PersistenceFailure(ReconciliationError):
    """The unit of work could not be committed; nothing was written."""


class RefundIneligible(ReconciliationError):
    """The order or return cannot be refunded in its current state."""
