"""Engine error taxonomy.

Precondition violations raise one of these. Business outcomes of a strategy
(risk rejection, insufficient balance, adapter failure on a leg) are also
reported as ``StrategyResult(success=False, error=<code>)``.
"""


class EngineError(Exception):
    """Base class; ``code`` is the stable machine-readable name."""

    code = "EngineError"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.code


class ValidationError(EngineError):
    """Malformed input or an argument outside its allowed range."""

    code = "ValidationError"


class RiskRejected(EngineError):
    code = "RiskRejected"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class AdapterFailure(EngineError):
    """A venue adapter or chain call failed."""

    code = "AdapterFailure"

    def __init__(self, venue: str, message: str):
        super().__init__(f"{venue}: {message}")
        self.venue = venue


class InsufficientBalance(EngineError):
    code = "InsufficientBalance"


class NotFound(EngineError):
    code = "NotFound"


class InvalidState(EngineError):
    """Operation not allowed in the entity's current lifecycle state."""

    code = "InvalidState"
