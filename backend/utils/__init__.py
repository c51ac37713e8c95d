from .logger import setup_logging, get_logger, ledger_logger, strategy_logger, session_logger, api_logger
from .utcnow import utcnow, utcfromtimestamp, hours_between

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "ledger_logger",
    "strategy_logger",
    "session_logger",
    "api_logger",
    # Time
    "utcnow",
    "utcfromtimestamp",
    "hours_between",
]
