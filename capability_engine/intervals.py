from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .models import SWEEP_TIE_BREAKS, Allocation

logger = logging.getLogger(__name__)

FULL_CAPACITY_PCT = 100.0


class MalformedInterval(ValueError):
    def __init__(self, allocation: Allocation, reason: str) -> None:
        super().__init__(f"allocation {allocation.id} malformed: {reason}")
        self.allocation = allocation
        self.reason = reason


@dataclass(frozen=True)
class LoadReport:
    """Peak concurrent commitment of one resource."""

    resource_id: Optional[int]
    max_load: float
    threshold: float = FULL_CAPACITY_PCT
    peak_start: Optional[date] = None
    peak_end: Optional[date] = None
    undated_load: float = 0.0
    allocation_count: int = 0

    @property
    def is_over_allocated(self) -> bool:
        return is_over_allocated(self.max_load, self.threshold)

    @property
    def over_allocation(self) -> float:
        return max(0.0, self.max_load - self.threshold)

    def describe(self) -> str:
        label = f"{self.max_load:g}%"
        if self.peak_start is not None and self.peak_end is not None:
            return f"{label} during {self.peak_start.isoformat()} to {self.peak_end.isoformat()}"
        if self.peak_start is not None:
            return f"{label} from {self.peak_start.isoformat()}"
        return f"{label} (no dated allocations)"


def is_over_allocated(load: float, threshold: float = FULL_CAPACITY_PCT) -> bool:
    return load > threshold


def check_interval(allocation: Allocation) -> None:
    pct = allocation.allocation_percentage
    if pct is None or (isinstance(pct, float) and math.isnan(pct)):
        raise MalformedInterval(allocation, "allocation percentage is missing")
    if pct < 0:
        raise MalformedInterval(allocation, f"negative allocation percentage {pct}")
    if allocation.has_dates() and allocation.end_date < allocation.start_date:
        raise MalformedInterval(
            allocation,
            f"end date {allocation.end_date.isoformat()} before start date {allocation.start_date.isoformat()}",
        )


def _build_events(
    allocations: Sequence[Allocation], tie_break: str
) -> List[Tuple[date, int, float]]:
    # Second field orders events sharing a timestamp; lower sorts first.
    end_rank, start_rank = (0, 1) if tie_break == "end_first" else (1, 0)
    events: List[Tuple[date, int, float]] = []
    for allocation in allocations:
        events.append((allocation.start_date, start_rank, allocation.allocation_percentage))
        events.append((allocation.end_date, end_rank, -allocation.allocation_percentage))
    events.sort(key=lambda event: (event[0], event[1]))
    return events


def analyze_load(
    allocations: Iterable[Allocation],
    *,
    resource_id: Optional[int] = None,
    threshold: float = FULL_CAPACITY_PCT,
    tie_break: str = "end_first",
) -> LoadReport:
    """Sweep the allocations' start/end events and report the peak running total.

    Intervals are half-open under ``end_first``: an allocation ending on the
    day another starts does not overlap it. Allocations missing a date are
    treated as concurrent with everything and added on top of the swept peak;
    with no dated allocations at all the result is the plain sum.
    """
    if tie_break not in SWEEP_TIE_BREAKS:
        raise ValueError(f"unsupported sweep tie-break '{tie_break}'")
    items = list(allocations)
    for allocation in items:
        check_interval(allocation)
    dated = [allocation for allocation in items if allocation.has_dates()]
    undated_load = float(sum(a.allocation_percentage for a in items if not a.has_dates()))

    peak = 0.0
    peak_start: Optional[date] = None
    peak_end: Optional[date] = None
    running = 0.0
    at_peak = False
    for when, _, delta in _build_events(dated, tie_break):
        # The window closes at the first event that lowers the running total.
        if at_peak and delta < 0:
            peak_end = when
            at_peak = False
        running += delta
        if running > peak:
            peak = running
            peak_start = when
            peak_end = None
            at_peak = True

    return LoadReport(
        resource_id=resource_id,
        max_load=peak + undated_load,
        threshold=threshold,
        peak_start=peak_start,
        peak_end=peak_end,
        undated_load=undated_load,
        allocation_count=len(items),
    )


def max_concurrent_load(allocations: Iterable[Allocation], tie_break: str = "end_first") -> float:
    return analyze_load(allocations, tie_break=tie_break).max_load


def load_by_resource(
    allocations: Iterable[Allocation],
    *,
    threshold: float = FULL_CAPACITY_PCT,
    tie_break: str = "end_first",
) -> Dict[int, LoadReport]:
    """One report per resource over its active allocations, keyed by resource id."""
    grouped: Dict[int, List[Allocation]] = defaultdict(list)
    for allocation in allocations:
        if allocation.is_active:
            grouped[allocation.resource_id].append(allocation)
    reports: Dict[int, LoadReport] = {}
    for resource_id in sorted(grouped):
        report = analyze_load(
            grouped[resource_id], resource_id=resource_id, threshold=threshold, tie_break=tie_break
        )
        if report.is_over_allocated:
            logger.debug("resource %s over-allocated: %s", resource_id, report.describe())
        reports[resource_id] = report
    return reports
