"""
End-to-end runs of the batch planner against the sample portfolio.
"""

import pandas as pd
import pytest

from capability_engine.main import main


def test_writes_reports(portfolio, capsys):
    main(["--project-dir", str(portfolio)])

    output = portfolio / "output"
    matches = pd.read_csv(output / "match_scores.csv")
    ranked = {
        requirement_id: list(zip(group["capability_id"], group["match_score"]))
        for requirement_id, group in matches.groupby("requirement_id")
    }
    assert ranked == {
        1: [(1, 94), (3, 82), (6, 67)],
        2: [(4, 97), (5, 97)],
        3: [(2, 92)],
    }
    assert matches.loc[matches["requirement_id"] == 1, "requirement_fulfilled"].eq(False).all()
    assert matches["rank"].tolist() == [1, 2, 3, 1, 2, 1]

    load = pd.read_csv(output / "resource_load.csv").set_index("resource_id")
    assert load.loc[1, "max_load_pct"] == 110
    assert bool(load.loc[1, "over_allocated"])
    assert load.loc[1, "peak_start"] == "2025-02-01"
    assert load.loc[1, "peak_end"] == "2025-03-01"
    assert load.loc[2, "max_load_pct"] == 80
    assert not bool(load.loc[2, "over_allocated"])
    assert load.loc[3, "max_load_pct"] == 70
    assert load.loc[3, "undated_load_pct"] == 70

    report = (output / "catalog_violations.md").read_text()
    assert "satisfy the taxonomy rules" in report

    out = capsys.readouterr().out
    assert "Wrote" in out
    assert "- resource 1: 110% (+10%) during 2025-02-01 to 2025-03-01" in out


def test_min_score_override(portfolio):
    main(["--project-dir", str(portfolio), "--min-score", "90"])
    matches = pd.read_csv(portfolio / "output" / "match_scores.csv")
    assert matches["capability_id"].tolist() == [1, 4, 5, 2]


def test_dry_run_writes_nothing(portfolio, capsys):
    main(["--project-dir", str(portfolio), "--dry-run"])
    out = capsys.readouterr().out
    assert "requirement 1: capability 1 (resource 1) scores 94" in out
    assert "resource 1: 110%" in out
    assert not (portfolio / "output").exists()


def test_violations_reported_and_skipped(portfolio):
    with (portfolio / "input" / "capabilities.csv").open("a") as handle:
        handle.write("7,1,1,10,100,Expert,3,true,true\n")
        handle.write("8,4,2,11,101,Expert,3,false,true\n")
    main(["--project-dir", str(portfolio)])

    report = (portfolio / "output" / "catalog_violations.md").read_text()
    assert "**capability 7**" in report
    assert "Kind: duplicate_primary" in report
    assert "**capability 8**" in report
    assert "Kind: scope_mismatch" in report

    matches = pd.read_csv(portfolio / "output" / "match_scores.csv")
    assert 7 not in matches["capability_id"].tolist()
    assert 8 not in matches["capability_id"].tolist()


def test_strict_mode_fails_on_violation(portfolio, capsys):
    with (portfolio / "input" / "capabilities.csv").open("a") as handle:
        handle.write("7,1,1,10,100,Expert,3,true,true\n")
    with pytest.raises(SystemExit) as excinfo:
        main(["--project-dir", str(portfolio), "--strict"])
    assert excinfo.value.code == 1
    assert "capability 7" in capsys.readouterr().err
    assert not (portfolio / "output").exists()


def test_malformed_allocation_is_reported(portfolio):
    with (portfolio / "input" / "allocations.csv").open("a") as handle:
        handle.write("7,2,500,50,2025-05-01,2025-04-01,,,true\n")
    main(["--project-dir", str(portfolio)])

    report = (portfolio / "output" / "catalog_violations.md").read_text()
    assert "## Malformed Allocations" in report
    assert "allocation 7" in report
    load = pd.read_csv(portfolio / "output" / "resource_load.csv").set_index("resource_id")
    assert load.loc[2, "max_load_pct"] == 80


def test_missing_input_exits_with_usage_error(portfolio, capsys):
    (portfolio / "input" / "config.json").unlink()
    with pytest.raises(SystemExit) as excinfo:
        main(["--project-dir", str(portfolio)])
    assert excinfo.value.code == 2
    assert "config file not found" in capsys.readouterr().err


def test_requires_project_dir_or_paths(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 2
    assert "missing required input paths" in capsys.readouterr().err
