from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import date
from typing import Dict, List, Optional, Tuple

import pandas as pd

from .intervals import MalformedInterval, check_interval, load_by_resource
from .io_utils import DATE_FMT
from .models import Allocation, Capability, EngineConfig, ProficiencyLevel, Requirement
from .scoring import batch_match
from .taxonomy import TaxonomyGraph
from .validator import Candidate, ConstraintViolation, DuplicatePrimary, NotFound, ScopeMismatch, validate

logger = logging.getLogger(__name__)

MATCH_COLUMNS = [
    "requirement_id",
    "project_id",
    "rank",
    "capability_id",
    "resource_id",
    "match_score",
    "requirement_fulfilled",
]

LOAD_COLUMNS = [
    "resource_id",
    "allocation_count",
    "max_load_pct",
    "over_allocated",
    "over_allocation_pct",
    "peak_start",
    "peak_end",
    "undated_load_pct",
    "escalate",
]


class CatalogViolationError(RuntimeError):
    def __init__(self, violations: List[Dict[str, object]]) -> None:
        first = violations[0]
        super().__init__(
            f"{len(violations)} catalog violation(s); first: {first['entity']} {first['id']}: {first['message']}"
        )
        self.violations = violations


def _optional_float(value: object) -> Optional[float]:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    return float(value)


def _optional_int(value: object) -> Optional[int]:
    number = _optional_float(value)
    return None if number is None else int(number)


def _capabilities_from_df(df: pd.DataFrame) -> List[Capability]:
    capabilities: List[Capability] = []
    for row in df.itertuples(index=False):
        capabilities.append(
            Capability(
                id=int(row.id),
                resource_id=int(row.resource_id),
                app_id=int(row.app_id),
                technology_id=int(row.technology_id),
                role_id=int(row.role_id),
                proficiency_level=ProficiencyLevel(int(row.proficiency_level)),
                years_of_experience=_optional_float(row.years_of_experience),
                is_primary=bool(row.is_primary),
                is_active=bool(row.is_active),
            )
        )
    capabilities.sort(key=lambda c: c.id)
    return capabilities


def _requirements_from_df(df: pd.DataFrame) -> List[Requirement]:
    requirements: List[Requirement] = []
    for row in df.itertuples(index=False):
        requirements.append(
            Requirement(
                id=int(row.id),
                project_id=int(row.project_id),
                app_id=int(row.app_id),
                technology_id=int(row.technology_id),
                role_id=int(row.role_id),
                proficiency_level=ProficiencyLevel(int(row.proficiency_level)),
                min_years_exp=_optional_float(row.min_years_exp),
                required_count=int(row.required_count),
                fulfilled_count=int(row.fulfilled_count),
                is_active=bool(row.is_active),
            )
        )
    requirements.sort(key=lambda r: r.id)
    return requirements


def _allocations_from_df(df: pd.DataFrame) -> List[Allocation]:
    allocations: List[Allocation] = []
    for row in df.itertuples(index=False):
        allocations.append(
            Allocation(
                id=int(row.id),
                resource_id=int(row.resource_id),
                project_id=int(row.project_id),
                allocation_percentage=float(row.allocation_percentage),
                start_date=row.start_date if isinstance(row.start_date, date) else None,
                end_date=row.end_date if isinstance(row.end_date, date) else None,
                resource_capability_id=_optional_int(row.resource_capability_id),
                project_requirement_id=_optional_int(row.project_requirement_id),
                is_active=bool(row.is_active),
            )
        )
    return allocations


def _violation_record(entity: str, entity_id: object, exc: ConstraintViolation) -> Dict[str, object]:
    record: Dict[str, object] = {"entity": entity, "id": entity_id, "message": str(exc)}
    if isinstance(exc, NotFound):
        record.update(kind="not_found", entity_kind=exc.entity_kind, entity_id=exc.entity_id)
    elif isinstance(exc, ScopeMismatch):
        record.update(kind="scope_mismatch", scope=exc.scope, owner_id=exc.owner_id, candidate_id=exc.candidate_id)
    elif isinstance(exc, DuplicatePrimary):
        record.update(kind="duplicate_primary", existing_capability_id=exc.existing_capability_id)
    else:
        record["kind"] = "constraint_violation"
    return record


def validate_catalog(
    taxonomy: TaxonomyGraph,
    capabilities: List[Capability],
    requirements: List[Requirement],
) -> Tuple[List[Capability], List[Requirement], List[Dict[str, object]]]:
    """Split the catalog into valid entries and violation records.

    Capabilities are checked in id order against the ones already accepted for
    the same resource, so the first primary capability wins.
    """
    violations: List[Dict[str, object]] = []
    accepted_by_resource: Dict[int, List[Capability]] = defaultdict(list)
    valid_capabilities: List[Capability] = []
    for capability in capabilities:
        if not capability.is_active:
            continue
        try:
            validate(
                taxonomy,
                Candidate.from_capability(capability),
                accepted_by_resource[capability.resource_id],
            )
        except ConstraintViolation as exc:
            violations.append(_violation_record("capability", capability.id, exc))
            continue
        accepted_by_resource[capability.resource_id].append(capability)
        valid_capabilities.append(capability)

    valid_requirements: List[Requirement] = []
    for requirement in requirements:
        if not requirement.is_active:
            continue
        try:
            validate(taxonomy, Candidate.from_requirement(requirement))
        except ConstraintViolation as exc:
            violations.append(_violation_record("requirement", requirement.id, exc))
            continue
        valid_requirements.append(requirement)
    return valid_capabilities, valid_requirements, violations


def _split_malformed(allocations: List[Allocation]) -> Tuple[List[Allocation], List[Dict[str, object]]]:
    clean: List[Allocation] = []
    malformed: List[Dict[str, object]] = []
    for allocation in allocations:
        if not allocation.is_active:
            continue
        try:
            check_interval(allocation)
        except MalformedInterval as exc:
            malformed.append(
                {"id": allocation.id, "resource_id": allocation.resource_id, "reason": exc.reason}
            )
            continue
        clean.append(allocation)
    return clean, malformed


def _format_date(value: Optional[date]) -> str:
    return value.strftime(DATE_FMT) if value is not None else ""


def analyze(
    taxonomy: TaxonomyGraph,
    capabilities_df: pd.DataFrame,
    requirements_df: pd.DataFrame,
    allocations_df: pd.DataFrame,
    cfg: EngineConfig,
    *,
    strict: bool = False,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    capabilities = _capabilities_from_df(capabilities_df)
    requirements = _requirements_from_df(requirements_df)
    allocations = _allocations_from_df(allocations_df)

    valid_capabilities, valid_requirements, violations = validate_catalog(
        taxonomy, capabilities, requirements
    )
    if violations:
        logger.warning("%d catalog entries failed validation", len(violations))
        if strict:
            raise CatalogViolationError(violations)

    matches = batch_match(valid_requirements, valid_capabilities, cfg.min_match_score, cfg.weights)
    requirement_lookup = {requirement.id: requirement for requirement in valid_requirements}
    match_rows: List[Dict[str, object]] = []
    for requirement_id, ranked in matches.items():
        requirement = requirement_lookup[requirement_id]
        for rank, match in enumerate(ranked, start=1):
            match_rows.append(
                {
                    "requirement_id": requirement_id,
                    "project_id": requirement.project_id,
                    "rank": rank,
                    "capability_id": match.capability.id,
                    "resource_id": match.capability.resource_id,
                    "match_score": match.score,
                    "requirement_fulfilled": requirement.is_fulfilled,
                }
            )
        if not ranked:
            logger.info("No candidate reaches %d for requirement %s", cfg.min_match_score, requirement_id)
    match_scores_df = pd.DataFrame(match_rows, columns=MATCH_COLUMNS)

    clean_allocations, malformed = _split_malformed(allocations)
    for item in malformed:
        logger.warning("Skipping allocation %s: %s", item["id"], item["reason"])
    reports = load_by_resource(
        clean_allocations,
        threshold=cfg.over_allocation_threshold_pct,
        tie_break=cfg.sweep_tie_break,
    )
    load_rows: List[Dict[str, object]] = []
    for resource_id, report in reports.items():
        if report.is_over_allocated:
            logger.warning("Resource %s over-allocated: %s", resource_id, report.describe())
        load_rows.append(
            {
                "resource_id": resource_id,
                "allocation_count": report.allocation_count,
                "max_load_pct": round(report.max_load, 4),
                "over_allocated": report.is_over_allocated,
                "over_allocation_pct": round(report.over_allocation, 4),
                "peak_start": _format_date(report.peak_start),
                "peak_end": _format_date(report.peak_end),
                "undated_load_pct": round(report.undated_load, 4),
                "escalate": report.max_load >= cfg.escalation_threshold_pct,
            }
        )
    resource_load_df = pd.DataFrame(load_rows, columns=LOAD_COLUMNS)
    resource_load_df.attrs["catalog_violations"] = violations
    resource_load_df.attrs["malformed_allocations"] = malformed
    return match_scores_df, resource_load_df
