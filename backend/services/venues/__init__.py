from .base import Capability, ChainClient, SignerSession, SwapFill, TxReceipt, VenueAdapter
from .paper import PaperVenue, default_paper_venues
from .registry import SignerSessions, VenueRegistry

__all__ = [
    "Capability",
    "ChainClient",
    "SignerSession",
    "SwapFill",
    "TxReceipt",
    "VenueAdapter",
    "PaperVenue",
    "default_paper_venues",
    "SignerSessions",
    "VenueRegistry",
]
