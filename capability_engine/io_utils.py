from __future__ import annotations

import json
from dataclasses import fields
from datetime import date
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pandas as pd
from dateutil import parser as dateparser

from .models import (
    SWEEP_TIE_BREAKS,
    Application,
    EngineConfig,
    ProficiencyLevel,
    Role,
    ScoringWeights,
    Technology,
)
from .taxonomy import TaxonomyGraph

DATE_FMT = "%Y-%m-%d"

_TRIPLE_COLUMNS = ("app_id", "technology_id", "role_id")
_CAPABILITY_REQUIRED_COLUMNS = {"id", "resource_id", *_TRIPLE_COLUMNS, "proficiency_level"}
_REQUIREMENT_REQUIRED_COLUMNS = {"id", "project_id", *_TRIPLE_COLUMNS, "proficiency_level"}
_ALLOCATION_REQUIRED_COLUMNS = {"id", "resource_id", "project_id", "allocation_percentage"}


def _require_columns(df: pd.DataFrame, required: Iterable[str], source: str) -> None:
    missing = sorted(col for col in required if col not in df.columns)
    if missing:
        raise ValueError(f"{source} missing required columns: {', '.join(missing)}")


def _is_missing(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and pd.isna(value):
        return True
    return isinstance(value, str) and value.strip() == ""


def _parse_bool(value: object, field_name: str, default: bool) -> bool:
    if _is_missing(value):
        return default
    if pd.api.types.is_bool(value):
        return bool(value)
    if pd.api.types.is_number(value):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "t", "1", "yes", "y"}:
            return True
        if lowered in {"false", "f", "0", "no", "n"}:
            return False
    raise ValueError(f"cannot interpret boolean value '{value}' in '{field_name}'")


def _parse_optional_date(value: object, field_name: str) -> Optional[date]:
    if _is_missing(value):
        return None
    if isinstance(value, date):
        return value
    try:
        return dateparser.isoparse(str(value)).date()
    except (ValueError, TypeError) as exc:
        raise ValueError(f"invalid date in '{field_name}': {value}") from exc


def _parse_optional_int(value: object, field_name: str) -> Optional[int]:
    if _is_missing(value):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid integer in '{field_name}': {value}") from exc
    if not number.is_integer():
        raise ValueError(f"invalid integer in '{field_name}': {value}")
    return int(number)


def _coerce_numeric(df: pd.DataFrame, columns: Iterable[str], source: str, *, nullable: bool) -> None:
    for col in columns:
        if col not in df.columns:
            continue
        try:
            df[col] = pd.to_numeric(df[col])
        except ValueError as exc:
            raise ValueError(f"{source}: invalid numeric value in column '{col}'") from exc
        if not nullable and df[col].isna().any():
            raise ValueError(f"{source}: column '{col}' contains missing values")
        if (df[col].dropna() < 0).any():
            raise ValueError(f"{source}: column '{col}' contains negative values")


def _coerce_integers(df: pd.DataFrame, columns: Iterable[str], source: str) -> None:
    columns = list(columns)
    _coerce_numeric(df, columns, source, nullable=False)
    for col in columns:
        fractional = df[col] % 1 != 0
        if fractional.any():
            bad = df.loc[fractional, col].iloc[0]
            raise ValueError(f"{source}: column '{col}' must contain whole numbers (got {bad:g})")
        df[col] = df[col].astype("int64")


def _read_table(path: str | Path, required: Iterable[str], source: str) -> pd.DataFrame:
    df = pd.read_csv(path)
    _require_columns(df, required, source)
    return df


def _normalize_flags(df: pd.DataFrame, defaults: Dict[str, bool]) -> None:
    for column, default in defaults.items():
        if column not in df.columns:
            df[column] = default
        df[column] = df[column].map(lambda value, name=column, fallback=default: _parse_bool(value, name, fallback))


def _normalize_proficiency(df: pd.DataFrame, source: str) -> None:
    try:
        df["proficiency_level"] = df["proficiency_level"].map(ProficiencyLevel.parse)
    except ValueError as exc:
        raise ValueError(f"{source}: {exc}") from exc


def load_capabilities(path: str | Path) -> pd.DataFrame:
    source = "capabilities.csv"
    df = _read_table(path, _CAPABILITY_REQUIRED_COLUMNS, source)
    _coerce_integers(df, ["id", "resource_id", *_TRIPLE_COLUMNS], source)
    if "years_of_experience" not in df.columns:
        df["years_of_experience"] = None
    _coerce_numeric(df, ["years_of_experience"], source, nullable=True)
    _normalize_proficiency(df, source)
    _normalize_flags(df, {"is_primary": False, "is_active": True})
    if df["id"].duplicated().any():
        raise ValueError(f"{source}: duplicate capability ids")
    return df


def load_requirements(path: str | Path) -> pd.DataFrame:
    source = "requirements.csv"
    df = _read_table(path, _REQUIREMENT_REQUIRED_COLUMNS, source)
    _coerce_integers(df, ["id", "project_id", *_TRIPLE_COLUMNS], source)
    for col, default in (("min_years_exp", None), ("required_count", 1), ("fulfilled_count", 0)):
        if col not in df.columns:
            df[col] = default
    _coerce_numeric(df, ["min_years_exp"], source, nullable=True)
    df["required_count"] = df["required_count"].fillna(1)
    df["fulfilled_count"] = df["fulfilled_count"].fillna(0)
    _coerce_integers(df, ["required_count", "fulfilled_count"], source)
    _normalize_proficiency(df, source)
    _normalize_flags(df, {"is_active": True})
    if df["id"].duplicated().any():
        raise ValueError(f"{source}: duplicate requirement ids")
    return df


def load_allocations(path: str | Path) -> pd.DataFrame:
    source = "allocations.csv"
    df = _read_table(path, _ALLOCATION_REQUIRED_COLUMNS, source)
    _coerce_integers(df, ["id", "resource_id", "project_id"], source)
    try:
        df["allocation_percentage"] = pd.to_numeric(df["allocation_percentage"])
    except ValueError as exc:
        raise ValueError(f"{source}: invalid numeric value in column 'allocation_percentage'") from exc
    if df["allocation_percentage"].isna().any():
        raise ValueError(f"{source}: column 'allocation_percentage' contains missing values")
    for col in ("start_date", "end_date"):
        if col not in df.columns:
            df[col] = None
        df[col] = df[col].map(lambda value, name=col: _parse_optional_date(value, name))
    for col in ("resource_capability_id", "project_requirement_id"):
        if col not in df.columns:
            df[col] = None
        df[col] = df[col].map(lambda value, name=col: _parse_optional_int(value, name))
    _normalize_flags(df, {"is_active": True})
    return df


def _taxonomy_entries(data: dict, key: str) -> List[dict]:
    entries = data.get(key, [])
    if not isinstance(entries, list):
        raise ValueError(f"taxonomy '{key}' must be an array")
    for entry in entries:
        if not isinstance(entry, dict) or "id" not in entry:
            raise ValueError(f"taxonomy '{key}' entries must be objects with an id")
    return entries


def load_taxonomy(path: str | Path) -> TaxonomyGraph:
    data = json.loads(Path(path).read_text())
    if not isinstance(data, dict):
        raise ValueError("taxonomy file must be a JSON object")
    apps = [
        Application(
            id=int(entry["id"]),
            name=str(entry.get("name", "")),
            is_global=_parse_bool(entry.get("is_global"), "is_global", False),
        )
        for entry in _taxonomy_entries(data, "apps")
    ]
    technologies = [
        Technology(
            id=int(entry["id"]),
            name=str(entry.get("name", "")),
            app_id=_parse_optional_int(entry.get("app_id"), "app_id"),
        )
        for entry in _taxonomy_entries(data, "technologies")
    ]
    roles = [
        Role(
            id=int(entry["id"]),
            name=str(entry.get("name", "")),
            app_id=_parse_optional_int(entry.get("app_id"), "app_id"),
            technology_id=_parse_optional_int(entry.get("technology_id"), "technology_id"),
        )
        for entry in _taxonomy_entries(data, "roles")
    ]
    if not apps:
        raise ValueError("taxonomy must define at least one app")
    return TaxonomyGraph.build(apps, technologies, roles)


def _load_weights(raw: object) -> ScoringWeights:
    if raw is None:
        return ScoringWeights()
    if not isinstance(raw, dict):
        raise ValueError("weights must be an object")
    known = {f.name for f in fields(ScoringWeights)}
    values: Dict[str, float] = {}
    for key, value in raw.items():
        if key not in known:
            raise ValueError(f"unknown weight '{key}'")
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
            raise ValueError(f"weights.{key} must be a non-negative number")
        values[key] = float(value)
    weights = ScoringWeights(**values)
    if abs(weights.total() - 100.0) > 1e-6:
        raise ValueError(f"score weights must sum to 100 (got {weights.total():g})")
    return weights


def _positive_number(data: dict, key: str, default: float) -> float:
    value = data.get(key, default)
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValueError(f"{key} must be a number")
    if value <= 0:
        raise ValueError(f"{key} must be positive")
    return float(value)


def load_config(path: str | Path) -> EngineConfig:
    data = json.loads(Path(path).read_text())
    if not isinstance(data, dict):
        raise ValueError("config file must be a JSON object")
    weights = _load_weights(data.get("weights"))

    min_match_score = data.get("min_match_score", 60)
    if not isinstance(min_match_score, int) or isinstance(min_match_score, bool) or not (0 <= min_match_score <= 100):
        raise ValueError("min_match_score must be an integer in [0, 100]")

    top_n = data.get("top_n", 5)
    if not isinstance(top_n, int) or isinstance(top_n, bool) or top_n <= 0:
        raise ValueError("top_n must be a positive integer")

    threshold = _positive_number(data, "over_allocation_threshold_pct", 100.0)
    escalation = _positive_number(data, "escalation_threshold_pct", 120.0)
    if escalation < threshold:
        raise ValueError("escalation_threshold_pct must not be lower than over_allocation_threshold_pct")

    tie_break = data.get("sweep_tie_break", "end_first")
    if tie_break not in SWEEP_TIE_BREAKS:
        raise ValueError(f"sweep_tie_break must be one of: {', '.join(SWEEP_TIE_BREAKS)}")

    logging_level = data.get("logging_level", "INFO")
    if not isinstance(logging_level, str):
        raise ValueError("logging_level must be a string")

    return EngineConfig(
        weights=weights,
        min_match_score=min_match_score,
        top_n=top_n,
        over_allocation_threshold_pct=threshold,
        escalation_threshold_pct=escalation,
        sweep_tie_break=tie_break,
        logging_level=logging_level,
    )


def ensure_directory(path: str | Path) -> Path:
    target = Path(path)
    target.mkdir(parents=True, exist_ok=True)
    return target


def write_csv(df: pd.DataFrame, path: str | Path) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
