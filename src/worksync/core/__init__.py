"""Core plumbing shared by the adapters and the sync engine."""

from .async_utils import backoff_delay, run_sync
from .rate_limit import GateClosedError, RateLimitGate

__all__ = ["GateClosedError", "RateLimitGate", "backoff_delay", "run_sync"]
