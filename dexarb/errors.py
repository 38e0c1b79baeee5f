# dexarb/errors.py
"""Exception taxonomy for the arbitrage core."""


class ArbError(Exception):
    """Base class for every error raised by the arbitrage core."""


# --- Input validation (rejected before any state transition) ---

class InvalidSettingsError(ArbError, ValueError):
    """Raised when a settings snapshot or update is out of range."""


class InvalidOpportunityError(ArbError, ValueError):
    """Raised when an opportunity handed to the session is malformed."""


# --- Policy rejection (rejected before execution starts) ---

class TradeRejected(ArbError):
    """Raised when the risk policy refuses a trade. No ledger entry is created."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ExecutionInProgress(TradeRejected):
    """Raised when a second execution is attempted while one is in flight."""

    def __init__(self, reason: str = "Another trade is already executing"):
        super().__init__(reason)


class KillSwitchEngaged(TradeRejected):
    """Raised while the kill switch guard window is open."""

    def __init__(self, reason: str = "Kill switch engaged, trading halted"):
        super().__init__(reason)


# --- Collaborator failures (raised by gateway adapters) ---

class LegError(ArbError):
    """A single build/sign/submit/confirm step of a trade leg failed."""


class SwapBuildError(LegError):
    pass


class SigningError(LegError):
    pass


class SubmissionError(LegError):
    pass


class ConfirmationError(LegError):
    pass


class ConfirmationTimeout(ConfirmationError):
    """The transaction was broadcast but never confirmed inside the wait budget."""


class QuoteFetchError(ArbError):
    """A venue feed could not be fetched or parsed."""


# --- Cancellation ---

class ExecutionCancelled(ArbError):
    """Cancellation was observed at a suspension point of the orchestrator."""
