"""
edgescan/rotation.py - EdgeScan
=================================
Which regions the master scan covers on a given invocation.

The base region is always scanned. Every (N + 1)th invocation, where N is
BASE_ONLY_SCANS_BETWEEN_ROTATIONS, one rotating region is appended:

    counter: 0    1   2   3   4    5   6   7   8    ...
    regions: AU+UK AU  AU  AU  AU+US AU  AU  AU  AU+EU ...

regions_for_scan() is pure. The counter itself lives in SQLite and is read
and incremented exactly once per invocation (store.next_rotation).
"""

import logging
from typing import Optional, Sequence

from edgescan import store
from edgescan.config import BASE_ONLY_SCANS_BETWEEN_ROTATIONS, BASE_REGION, ROTATION_ORDER

logger = logging.getLogger(__name__)


def regions_for_scan(
    counter: int,
    base_region: str = BASE_REGION,
    rotation_order: Sequence[str] = ROTATION_ORDER,
    base_only_cycles: int = BASE_ONLY_SCANS_BETWEEN_ROTATIONS,
) -> list[str]:
    """
    Regions for a given counter value.

    >>> regions_for_scan(0)
    ['AU', 'UK']
    >>> regions_for_scan(1)
    ['AU']
    >>> regions_for_scan(4)
    ['AU', 'US']
    >>> regions_for_scan(8)
    ['AU', 'EU']
    """
    if counter < 0:
        raise ValueError(f"Rotation counter cannot be negative: {counter}")
    regions = [base_region]
    period = base_only_cycles + 1
    if rotation_order and counter % period == 0:
        extra = rotation_order[(counter // period) % len(rotation_order)]
        if extra != base_region:
            regions.append(extra)
    return regions


def next_rotation(db_path: Optional[str] = None) -> int:
    """Atomically claim the next rotation slot. Returns the pre-increment counter."""
    return store.next_rotation(db_path)


def regions_for_this_invocation(db_path: Optional[str] = None) -> tuple[int, list[str]]:
    """
    Claim a rotation slot and derive its regions.

    Call once per orchestrator invocation, never per region or subscriber.

    Returns:
        (counter, regions)
    """
    counter = next_rotation(db_path)
    regions = regions_for_scan(counter)
    logger.info("Rotation #%d: scanning %s", counter, ", ".join(regions))
    return counter, regions
