from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import IntEnum
from typing import Optional


class ProficiencyLevel(IntEnum):
    """Ordinal proficiency scale; the integer value is the rank."""

    BEGINNER = 1
    INTERMEDIATE = 2
    ADVANCED = 3
    EXPERT = 4

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def parse(cls, value: object) -> "ProficiencyLevel":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().upper()
            if key in cls.__members__:
                return cls[key]
        raise ValueError(f"unsupported proficiency level '{value}'")


SWEEP_TIE_BREAKS = ("end_first", "start_first")


@dataclass(frozen=True)
class Application:
    id: int
    name: str = ""
    is_global: bool = False


@dataclass(frozen=True)
class Technology:
    """Technology node; ``app_id`` of None means usable under any application."""

    id: int
    name: str = ""
    app_id: Optional[int] = None


@dataclass(frozen=True)
class Role:
    id: int
    name: str = ""
    app_id: Optional[int] = None
    technology_id: Optional[int] = None


@dataclass(frozen=True)
class Capability:
    """Resource-side fact: one person can work an app/technology/role triple."""

    id: Optional[int]
    resource_id: int
    app_id: int
    technology_id: int
    role_id: int
    proficiency_level: ProficiencyLevel = ProficiencyLevel.INTERMEDIATE
    years_of_experience: Optional[float] = None
    is_primary: bool = False
    is_active: bool = True

    def triple(self) -> tuple:
        return (self.app_id, self.technology_id, self.role_id)


@dataclass(frozen=True)
class Requirement:
    """Project-side need for an app/technology/role triple."""

    id: Optional[int]
    project_id: int
    app_id: int
    technology_id: int
    role_id: int
    proficiency_level: ProficiencyLevel = ProficiencyLevel.INTERMEDIATE
    min_years_exp: Optional[float] = None
    required_count: int = 1
    fulfilled_count: int = 0
    is_active: bool = True

    def triple(self) -> tuple:
        return (self.app_id, self.technology_id, self.role_id)

    @property
    def is_fulfilled(self) -> bool:
        return self.fulfilled_count >= self.required_count


@dataclass(frozen=True)
class Allocation:
    """Time-bounded percentage commitment of one resource to one project."""

    id: Optional[int]
    resource_id: int
    project_id: int
    allocation_percentage: float
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    resource_capability_id: Optional[int] = None
    project_requirement_id: Optional[int] = None
    match_score: Optional[int] = None
    is_active: bool = True

    def has_dates(self) -> bool:
        return self.start_date is not None and self.end_date is not None


@dataclass(frozen=True)
class ScoringWeights:
    """Weights and decay factors for the match score; the four weights sum to 100."""

    exact_match: float = 40.0
    proficiency: float = 30.0
    experience: float = 20.0
    primary_bonus: float = 10.0
    overqualified_penalty: float = 0.1
    underqualified_penalty: float = 0.3
    excess_experience_penalty: float = 0.05
    excess_experience_cap: float = 5.0
    missing_experience_penalty: float = 0.15
    secondary_share: float = 0.7

    def total(self) -> float:
        return self.exact_match + self.proficiency + self.experience + self.primary_bonus


DEFAULT_WEIGHTS = ScoringWeights()


@dataclass(frozen=True)
class EngineConfig:
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    min_match_score: int = 60
    top_n: int = 5
    over_allocation_threshold_pct: float = 100.0
    escalation_threshold_pct: float = 120.0
    sweep_tie_break: str = "end_first"
    logging_level: str = "INFO"
