"""
Exception types shared by the gateway, classifier and orchestrator.
"""


class TrackerError(Exception):
    """Base class for every error raised by the tracker."""


class InvalidAddress(TrackerError):
    """An account or mint identifier failed the base58 format check."""

    def __init__(self, address, kind: str = "address"):
        self.address = address
        self.kind = kind
        super().__init__(f"Invalid {kind} format: {address!r}")


class RemoteUnavailable(TrackerError):
    """The ledger provider or price aggregator could not serve a request."""


class RateLimited(RemoteUnavailable):
    """The remote provider throttled us (HTTP 429 or an equivalent RPC error)."""


class Cancelled(TrackerError):
    """A refresh cycle was cancelled cooperatively."""


class ParseFailure(TrackerError):
    """A raw transaction did not have the expected shape."""
