from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd

from . import engine
from .engine import CatalogViolationError
from .io_utils import (
    ensure_directory,
    load_allocations,
    load_capabilities,
    load_config,
    load_requirements,
    load_taxonomy,
    write_csv,
)
from .models import EngineConfig
from .taxonomy import TaxonomyGraph

INPUT_FILES = {
    "taxonomy": "taxonomy.json",
    "capabilities": "capabilities.csv",
    "requirements": "requirements.csv",
    "allocations": "allocations.csv",
    "config": "config.json",
}


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Capability matching and allocation integrity report (CSV/JSON in, CSV out)."
    )
    parser.add_argument(
        "--project-dir",
        help="Portfolio directory containing input/ and output/ subfolders",
    )
    parser.add_argument("--taxonomy", help="Path to taxonomy JSON (overrides project-dir default)")
    parser.add_argument("--capabilities", help="Path to capabilities CSV (overrides project-dir default)")
    parser.add_argument("--requirements", help="Path to requirements CSV (overrides project-dir default)")
    parser.add_argument("--allocations", help="Path to allocations CSV (overrides project-dir default)")
    parser.add_argument("--config", help="Path to configuration JSON file (overrides project-dir default)")
    parser.add_argument(
        "--outdir",
        default=None,
        help="Output directory for generated files (default: <project-dir>/output or ./out)",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail if any capability or requirement violates the taxonomy rules",
    )
    parser.add_argument(
        "--min-score",
        type=int,
        help="Override config.min_match_score for candidate ranking",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Analyze and print summary without writing output files",
    )
    return parser.parse_args(argv)


def _resolve_io_paths(args: argparse.Namespace) -> Tuple[Dict[str, Path], Path]:
    project_dir = Path(args.project_dir).resolve() if args.project_dir else None
    if project_dir and not project_dir.exists():
        raise ValueError(f"project directory not found: {project_dir}")
    input_dir = project_dir / "input" if project_dir else None

    paths: Dict[str, Path] = {}
    missing: List[str] = []
    for label, default_name in INPUT_FILES.items():
        value = getattr(args, label)
        if value:
            paths[label] = Path(value)
        elif input_dir:
            paths[label] = input_dir / default_name
        else:
            missing.append(label)
    if missing:
        joined = ", ".join(f"--{name}" for name in missing)
        raise ValueError(f"missing required input paths: {joined} (or provide --project-dir)")

    for label, path in paths.items():
        if not path.exists():
            raise ValueError(f"{label} file not found at {path}")

    if args.outdir:
        outdir = Path(args.outdir)
    elif project_dir:
        outdir = project_dir / "output"
    else:
        outdir = Path("out")
    return paths, outdir


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(levelname)s %(message)s")


def _print_dry_run_summary(matches: pd.DataFrame, load: pd.DataFrame) -> None:
    if matches.empty:
        print("No candidate matches.")
    else:
        print("Top candidates:")
        for row in matches[matches["rank"] == 1].itertuples(index=False):
            print(
                f"- requirement {row.requirement_id}: capability {row.capability_id} "
                f"(resource {row.resource_id}) scores {row.match_score}"
            )
    over = _over_allocated(load)
    if over.empty:
        print("\nOver-allocated resources: none")
    else:
        print("\nOver-allocated resources:")
        for row in over.itertuples(index=False):
            print(f"- resource {row.resource_id}: {_load_label(row)}")
    violations = load.attrs.get("catalog_violations", [])
    if violations:
        print("\nCatalog violations:")
        for item in violations:
            print(f"- {item['entity']} {item['id']}: {item['message']}")


def _over_allocated(load: pd.DataFrame) -> pd.DataFrame:
    if load.empty:
        return load
    return load[load["over_allocated"].astype(bool)]


def _load_label(row) -> str:
    label = f"{row.max_load_pct:g}% (+{row.over_allocation_pct:g}%)"
    if row.peak_start and row.peak_end:
        label += f" during {row.peak_start} to {row.peak_end}"
    return label


def _write_violations_markdown(
    violations: List[Dict[str, object]],
    malformed: List[Dict[str, object]],
    outdir: Path,
) -> Path:
    path = outdir / "catalog_violations.md"
    lines: List[str] = ["# Catalog Violations", ""]
    if not violations:
        lines.append("All capabilities and requirements satisfy the taxonomy rules.")
    else:
        for item in violations:
            lines.append(f"- **{item['entity']} {item['id']}**")
            lines.append(f"  - Kind: {item['kind']}")
            lines.append(f"  - Reason: {item['message']}")
            lines.append("")
    if malformed:
        lines.extend(["", "## Malformed Allocations", ""])
        for item in malformed:
            lines.append(f"- **allocation {item['id']}** (resource {item['resource_id']}): {item['reason']}")
    path.write_text("\n".join(lines).strip() + "\n")
    return path


def load_inputs(
    paths: Dict[str, Path],
) -> Tuple[TaxonomyGraph, pd.DataFrame, pd.DataFrame, pd.DataFrame, EngineConfig]:
    """Read the five portfolio inputs; any bad file raises ``ValueError``."""
    return (
        load_taxonomy(paths["taxonomy"]),
        load_capabilities(paths["capabilities"]),
        load_requirements(paths["requirements"]),
        load_allocations(paths["allocations"]),
        load_config(paths["config"]),
    )


def write_reports(match_scores_df: pd.DataFrame, resource_load_df: pd.DataFrame, outdir: Path) -> List[Path]:
    outdir_path = ensure_directory(outdir)
    matches_path = outdir_path / "match_scores.csv"
    load_path = outdir_path / "resource_load.csv"
    write_csv(match_scores_df, matches_path)
    write_csv(resource_load_df, load_path)
    violations_path = _write_violations_markdown(
        resource_load_df.attrs.get("catalog_violations", []),
        resource_load_df.attrs.get("malformed_allocations", []),
        outdir_path,
    )
    return [matches_path, load_path, violations_path]


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    try:
        paths, outdir = _resolve_io_paths(args)
        taxonomy, capabilities_df, requirements_df, allocations_df, cfg = load_inputs(paths)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(2)
    if args.min_score is not None:
        cfg = replace(cfg, min_match_score=args.min_score)
    _configure_logging(cfg.logging_level)
    try:
        match_scores_df, resource_load_df = engine.analyze(
            taxonomy, capabilities_df, requirements_df, allocations_df, cfg, strict=args.strict
        )
    except CatalogViolationError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    if args.dry_run:
        _print_dry_run_summary(match_scores_df, resource_load_df)
        return

    for path in write_reports(match_scores_df, resource_load_df, outdir):
        print(f"Wrote {path}")
    over = _over_allocated(resource_load_df)
    if not over.empty:
        print("Over-allocated resources:")
        for row in over.itertuples(index=False):
            print(f"- resource {row.resource_id}: {_load_label(row)}")


if __name__ == "__main__":
    main()
