from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence

from .models import DEFAULT_WEIGHTS, Capability, Requirement, ScoringWeights

DEFAULT_MIN_SCORE = 60
DEFAULT_TOP_N = 5


@dataclass(frozen=True)
class Match:
    capability: Capability
    score: int


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _proficiency_points(capability: Capability, requirement: Requirement, weights: ScoringWeights) -> float:
    have = int(capability.proficiency_level)
    need = int(requirement.proficiency_level)
    if have == need:
        return weights.proficiency
    if have > need:
        return weights.proficiency * (1 - weights.overqualified_penalty * (have - need))
    return weights.proficiency * max(0.0, 1 - weights.underqualified_penalty * (need - have))


def _experience_points(capability: Capability, requirement: Requirement, weights: ScoringWeights) -> float:
    if requirement.min_years_exp is None:
        return weights.experience
    years = capability.years_of_experience or 0
    minimum = requirement.min_years_exp
    if years == minimum:
        return weights.experience
    if years > minimum:
        excess = min(years - minimum, weights.excess_experience_cap)
        return weights.experience * (1 - weights.excess_experience_penalty * excess)
    return weights.experience * max(0.0, 1 - weights.missing_experience_penalty * (minimum - years))


def score(
    capability: Capability,
    requirement: Requirement,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> int:
    """Fit of one capability to one requirement as an integer in [0, 100].

    A different app, technology or role scores 0 outright. Otherwise the score
    adds the identity weight, a proficiency term (overqualification is
    penalised lightly, underqualification three times as steeply), an
    experience term whose excess decay stops after a capped number of years,
    and the primary bonus (a share of it for secondary capabilities).
    """
    if capability.triple() != requirement.triple():
        return 0
    total = weights.exact_match
    total += _proficiency_points(capability, requirement, weights)
    total += _experience_points(capability, requirement, weights)
    if capability.is_primary:
        total += weights.primary_bonus
    else:
        total += weights.primary_bonus * weights.secondary_share
    return max(0, min(100, _round_half_up(total)))


def rank_candidates(
    requirement: Requirement,
    capabilities: Iterable[Capability],
    min_score: int = DEFAULT_MIN_SCORE,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> List[Match]:
    """Score every candidate, keep those at or above ``min_score``, best first.

    ``sorted`` is stable, so equal scores keep their input order.
    """
    matches = [Match(capability, score(capability, requirement, weights)) for capability in capabilities]
    matches = [match for match in matches if match.score >= min_score]
    return sorted(matches, key=lambda match: match.score, reverse=True)


def recommend(
    requirement: Requirement,
    capabilities: Iterable[Capability],
    top_n: int = DEFAULT_TOP_N,
    min_score: int = DEFAULT_MIN_SCORE,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> List[Match]:
    active = (capability for capability in capabilities if capability.is_active)
    return rank_candidates(requirement, active, min_score, weights)[: max(top_n, 0)]


def batch_match(
    requirements: Iterable[Requirement],
    capabilities: Sequence[Capability],
    min_score: int = DEFAULT_MIN_SCORE,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> Dict[int, List[Match]]:
    """Rank active capabilities for every requirement that has an id."""
    active = [capability for capability in capabilities if capability.is_active]
    results: Dict[int, List[Match]] = {}
    for requirement in requirements:
        if requirement.id is None:
            continue
        results[requirement.id] = rank_candidates(requirement, active, min_score, weights)
    return results
