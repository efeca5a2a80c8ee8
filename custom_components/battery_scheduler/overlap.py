"""Normalize schedule periods into a sorted, non-overlapping set."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace

from .models import ChargingPeriod

_LOGGER = logging.getLogger(__name__)


def _sort_key(indexed: tuple[int, ChargingPeriod]) -> tuple[int, int, int]:
    index, period = indexed
    # Charge before discharge on an identical start, then input order.
    return (period.start_minute, 0 if period.is_charge else 1, index)


def resolve_overlaps(periods: Iterable[ChargingPeriod]) -> list[ChargingPeriod]:
    """
    Resolve overlapping periods with a single left-to-right sweep.

    Periods are sorted by start time and compared against the last
    accepted period:

    - no overlap: accepted as-is
    - overlap with the same type: merged into the predecessor, whose end
      becomes the later of both ends
    - overlap with a different type: the later period starts when the
      predecessor ends, and is dropped when nothing is left of it

    Every accepted period starts at or after the end of the one before,
    so the result never contains two overlapping periods.
    """
    resolved: list[ChargingPeriod] = []

    for _, period in sorted(enumerate(periods), key=_sort_key):
        if not period.is_valid:
            _LOGGER.debug("Dropping empty period %s", period.describe())
            continue

        if not resolved or period.start_minute >= resolved[-1].end_minute:
            resolved.append(period)
            continue

        previous = resolved[-1]
        if period.charge_type is previous.charge_type:
            resolved[-1] = replace(
                previous,
                end=max(previous.end, period.end),
                weekdays=tuple(
                    a or b
                    for a, b in zip(previous.weekdays, period.weekdays, strict=True)
                ),
            )
            _LOGGER.debug(
                "Merged %s into %s", period.describe(), resolved[-1].describe()
            )
            continue

        shifted = period.with_minutes(previous.end_minute, period.end_minute)
        if not shifted.is_valid:
            _LOGGER.debug(
                "Dropping %s, fully covered by %s",
                period.describe(),
                previous.describe(),
            )
            continue

        _LOGGER.debug("Shifted %s to %s", period.describe(), shifted.describe())
        resolved.append(shifted)

    return resolved
