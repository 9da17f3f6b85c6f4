class SettlementError(Exception):
    pass


class ValidationError(SettlementError):
    pass


class NotFoundError(SettlementError):
    pass


class InsufficientCreditsError(SettlementError):
    pass


class InsufficientPayableBalanceError(SettlementError):
    pass


class BelowMinimumError(SettlementError):
    pass


class MissingEvidenceError(SettlementError):
    pass


class InvalidStateTransitionError(SettlementError):
    pass


class ConflictError(SettlementError):
    """Raised when a guarded write finds the stored record no longer in the expected state."""


class AlreadyPaidError(SettlementError):
    pass
