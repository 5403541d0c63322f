"""
edgescan/errors.py - EdgeScan exception hierarchy.

Subscriber ineligibility (interval not reached, credit cap) is NOT an
exception: governor.check_should_scan returns an Eligibility with a reason.
"""


class EdgeScanError(Exception):
    """Base class for all EdgeScan errors."""


class ProviderError(EdgeScanError):
    """Odds fetch failed or timed out. Retried at the next scheduled invocation."""


class PersistenceError(EdgeScanError):
    """Authoritative cache or subscriber-state write failed."""


class AlertGatewayError(EdgeScanError):
    """Outbound alert could not be delivered."""
