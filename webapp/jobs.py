"""Background analysis runs for the web front end.

Each run loads one portfolio, runs the engine on a worker thread, writes the
reports to ``<portfolio>/output`` and keeps a summary of the outcome (report
files, over-allocated resources, violation counts) so the status endpoint can
answer without rereading the CSVs.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Literal, Optional, Tuple

import pandas as pd

from capability_engine import engine
from capability_engine.engine import CatalogViolationError
from capability_engine.main import INPUT_FILES, load_inputs, write_reports

logger = logging.getLogger(__name__)

RunState = Literal["queued", "running", "done", "failed"]


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass(frozen=True)
class OverAllocation:
    resource_id: int
    max_load_pct: float
    peak_window: str
    escalate: bool


@dataclass(frozen=True)
class AnalysisRun:
    id: str
    portfolio: str
    portfolio_dir: str
    strict: bool = False
    min_score: Optional[int] = None
    state: RunState = "queued"
    submitted_at: str = field(default_factory=_timestamp)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None
    reports: Tuple[str, ...] = ()
    candidate_count: int = 0
    requirements_matched: int = 0
    over_allocated: Tuple[OverAllocation, ...] = ()
    violation_count: int = 0
    malformed_count: int = 0

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def _peak_window(row) -> str:
    if isinstance(row.peak_start, str) and row.peak_start and isinstance(row.peak_end, str) and row.peak_end:
        return f"{row.peak_start} to {row.peak_end}"
    return ""


def _summarize(
    match_scores_df: pd.DataFrame, resource_load_df: pd.DataFrame, reports: List[Path]
) -> Dict[str, object]:
    over_allocated = tuple(
        OverAllocation(
            resource_id=int(row.resource_id),
            max_load_pct=float(row.max_load_pct),
            peak_window=_peak_window(row),
            escalate=bool(row.escalate),
        )
        for row in resource_load_df.itertuples(index=False)
        if row.over_allocated
    )
    return {
        "reports": tuple(path.name for path in reports),
        "candidate_count": len(match_scores_df),
        "requirements_matched": int(match_scores_df["requirement_id"].nunique()),
        "over_allocated": over_allocated,
        "violation_count": len(resource_load_df.attrs.get("catalog_violations", [])),
        "malformed_count": len(resource_load_df.attrs.get("malformed_allocations", [])),
    }


class AnalysisRunner:
    """Registry of analysis runs; runs are immutable snapshots replaced on each transition."""

    def __init__(self) -> None:
        self._runs: Dict[str, AnalysisRun] = {}
        self._lock = threading.Lock()

    def submit(
        self,
        portfolio_dir: Path,
        *,
        strict: bool = False,
        min_score: Optional[int] = None,
        background: bool = True,
    ) -> AnalysisRun:
        run = AnalysisRun(
            id=uuid.uuid4().hex,
            portfolio=portfolio_dir.name,
            portfolio_dir=str(portfolio_dir),
            strict=strict,
            min_score=min_score,
        )
        with self._lock:
            self._runs[run.id] = run
        if not background:
            return self._execute(run.id)
        worker = threading.Thread(
            target=self._execute, args=(run.id,), name=f"analysis-{run.id[:8]}", daemon=True
        )
        worker.start()
        return run

    def get(self, run_id: str) -> Optional[AnalysisRun]:
        with self._lock:
            return self._runs.get(run_id)

    def history(self) -> List[AnalysisRun]:
        with self._lock:
            runs = list(self._runs.values())
        return sorted(runs, key=lambda run: run.submitted_at, reverse=True)

    def _transition(self, run_id: str, **changes: object) -> AnalysisRun:
        with self._lock:
            run = replace(self._runs[run_id], **changes)
            self._runs[run_id] = run
        return run

    def _execute(self, run_id: str) -> AnalysisRun:
        run = self._transition(run_id, state="running", started_at=_timestamp())
        portfolio_dir = Path(run.portfolio_dir)
        paths = {label: portfolio_dir / "input" / name for label, name in INPUT_FILES.items()}
        try:
            taxonomy, capabilities_df, requirements_df, allocations_df, cfg = load_inputs(paths)
            if run.min_score is not None:
                cfg = replace(cfg, min_match_score=run.min_score)
            match_scores_df, resource_load_df = engine.analyze(
                taxonomy, capabilities_df, requirements_df, allocations_df, cfg, strict=run.strict
            )
            reports = write_reports(match_scores_df, resource_load_df, portfolio_dir / "output")
        except (ValueError, CatalogViolationError, OSError) as exc:
            logger.warning("Analysis of %s failed: %s", run.portfolio, exc)
            return self._transition(run_id, state="failed", finished_at=_timestamp(), error=str(exc))
        summary = _summarize(match_scores_df, resource_load_df, reports)
        logger.info(
            "Analysis of %s done: %d candidates, %d over-allocated resources",
            run.portfolio,
            summary["candidate_count"],
            len(summary["over_allocated"]),
        )
        return self._transition(run_id, state="done", finished_at=_timestamp(), **summary)
