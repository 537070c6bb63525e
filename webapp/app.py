from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

import pandas as pd
from flask import Flask, jsonify, request, url_for

from capability_engine.main import INPUT_FILES

from .jobs import AnalysisRunner

REPORT_FILES = {"matches": "match_scores.csv", "load": "resource_load.csv"}


@dataclass(frozen=True)
class PortfolioRoot:
    """Directory whose children are portfolios with ``input/`` and ``output/`` folders."""

    path: Path

    @classmethod
    def from_environment(cls) -> "PortfolioRoot":
        configured = os.getenv("PROJECTS_ROOT")
        if configured:
            return cls(Path(configured).expanduser().resolve())
        return cls((Path(__file__).resolve().parent.parent / "portfolios").resolve())

    def locate(self, name: str) -> Path:
        if not name:
            raise ValueError("project_dir is required")
        portfolio_dir = (self.path / Path(name).expanduser()).resolve()
        if self.path not in portfolio_dir.parents:
            raise ValueError(f"Portfolio directory must be inside {self.path}")
        if not portfolio_dir.is_dir():
            raise ValueError(f"Portfolio directory not found: {portfolio_dir}")
        return portfolio_dir

    def missing_inputs(self, portfolio_dir: Path) -> List[str]:
        return [name for name in INPUT_FILES.values() if not (portfolio_dir / "input" / name).is_file()]

    def runnable(self, name: str) -> Path:
        portfolio_dir = self.locate(name)
        missing = self.missing_inputs(portfolio_dir)
        if missing:
            raise ValueError(f"Portfolio {portfolio_dir.name} is missing inputs: {', '.join(missing)}")
        return portfolio_dir

    def listing(self) -> List[Dict[str, object]]:
        if not self.path.is_dir():
            return []
        entries: List[Dict[str, object]] = []
        for portfolio_dir in sorted(child for child in self.path.iterdir() if child.is_dir()):
            missing = self.missing_inputs(portfolio_dir)
            entries.append(
                {
                    "name": portfolio_dir.name,
                    "input_dir": (portfolio_dir / "input").as_posix(),
                    "is_valid": not missing,
                    "missing": missing,
                    "reports": sorted(
                        report
                        for report, filename in REPORT_FILES.items()
                        if (portfolio_dir / "output" / filename).is_file()
                    ),
                }
            )
        return entries

    def report_records(self, name: str, report: str) -> List[Dict[str, object]]:
        """Rows of a written report as JSON-ready dicts; blank cells become None."""
        report_path = self.locate(name) / "output" / REPORT_FILES[report]
        if not report_path.is_file():
            raise FileNotFoundError(f"{report_path.name} not found; run the analysis first")
        df = pd.read_csv(report_path)
        return df.astype(object).where(df.notna(), None).to_dict(orient="records")


def create_app() -> Flask:
    app = Flask(__name__)
    root = PortfolioRoot.from_environment()
    runner = AnalysisRunner()
    app.config["PROJECTS_ROOT"] = root.path
    app.config["ANALYSIS_RUNNER"] = runner

    @app.get("/")
    def index():
        return jsonify(
            {
                "projects_root": root.path.as_posix(),
                "projects": root.listing(),
                "runs": [run.to_dict() for run in runner.history()],
            }
        )

    @app.get("/dirs")
    def directories():
        return jsonify({"projects": root.listing()})

    @app.post("/run")
    def run_analysis():
        data = request.get_json(silent=True) or {}
        min_score = data.get("min_score")
        if min_score is not None and (not isinstance(min_score, int) or isinstance(min_score, bool)):
            return jsonify({"error": "min_score must be an integer"}), 400
        try:
            portfolio_dir = root.runnable(data.get("project_dir") or request.form.get("project_dir", ""))
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        run = runner.submit(portfolio_dir, strict=bool(data.get("strict")), min_score=min_score)
        return jsonify({"job_id": run.id, "status_url": url_for("run_status", job_id=run.id)}), 202

    @app.get("/status/<job_id>")
    def run_status(job_id: str):
        run = runner.get(job_id)
        if run is None:
            return jsonify({"error": "job not found"}), 404
        return jsonify(run.to_dict())

    @app.get("/api/<report>/<portfolio_name>")
    def report_rows(report: str, portfolio_name: str):
        """Rows of ``matches`` (ranked candidates) or ``load`` (peak load per resource)."""
        if report not in REPORT_FILES:
            return jsonify({"error": f"unknown report '{report}'"}), 404
        try:
            return jsonify(root.report_records(portfolio_name, report))
        except FileNotFoundError as exc:
            return jsonify({"error": str(exc)}), 404
        except (ValueError, OSError) as exc:
            return jsonify({"error": str(exc)}), 400

    return app


if __name__ == "__main__":
    create_app().run(debug=True)
