from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .models import Capability, Requirement
from .taxonomy import (
    TaxonomyGraph,
    role_in_app_scope,
    role_in_technology_scope,
    technology_in_scope,
)


class ConstraintViolation(ValueError):
    """Structural catalog error; subclasses keep the offending ids as attributes."""


class NotFound(ConstraintViolation):
    def __init__(self, entity_kind: str, entity_id: object) -> None:
        super().__init__(f"{entity_kind} with ID {entity_id} not found")
        self.entity_kind = entity_kind
        self.entity_id = entity_id


class ScopeMismatch(ConstraintViolation):
    def __init__(self, scope: str, owner_id: object, candidate_id: object) -> None:
        if scope == "technology":
            message = f"technology is specific to app ID {owner_id}, but app ID {candidate_id} was selected"
        elif scope == "role-app":
            message = f"role is specific to app ID {owner_id}, but app ID {candidate_id} was selected"
        else:
            message = (
                f"role is specific to technology ID {owner_id}, "
                f"but technology ID {candidate_id} was selected"
            )
        super().__init__(message)
        self.scope = scope
        self.owner_id = owner_id
        self.candidate_id = candidate_id


class DuplicatePrimary(ConstraintViolation):
    def __init__(self, existing_capability_id: object) -> None:
        super().__init__(
            f"resource already has a primary capability (ID: {existing_capability_id})"
        )
        self.existing_capability_id = existing_capability_id


@dataclass(frozen=True)
class Candidate:
    app_id: int
    technology_id: int
    role_id: int
    resource_id: Optional[int] = None
    is_primary: bool = False
    exclude_capability_id: Optional[int] = None

    @classmethod
    def from_capability(cls, capability: Capability) -> "Candidate":
        return cls(
            app_id=capability.app_id,
            technology_id=capability.technology_id,
            role_id=capability.role_id,
            resource_id=capability.resource_id,
            is_primary=capability.is_primary,
            exclude_capability_id=capability.id,
        )

    @classmethod
    def from_requirement(cls, requirement: Requirement) -> "Candidate":
        return cls(
            app_id=requirement.app_id,
            technology_id=requirement.technology_id,
            role_id=requirement.role_id,
        )


def validate(
    taxonomy: TaxonomyGraph,
    candidate: Candidate,
    existing_capabilities: Iterable[Capability] = (),
) -> None:
    """Raise the first ConstraintViolation for ``candidate``; return None when legal.

    Checks run in a fixed order: lookups, technology scope, role app scope,
    role technology scope, then the one-primary-per-resource rule against the
    resource's other active capabilities. Nothing is written.
    """
    app = taxonomy.app(candidate.app_id)
    if app is None:
        raise NotFound("app", candidate.app_id)
    technology = taxonomy.technology(candidate.technology_id)
    if technology is None:
        raise NotFound("technology", candidate.technology_id)
    role = taxonomy.role(candidate.role_id)
    if role is None:
        raise NotFound("role", candidate.role_id)

    if not technology_in_scope(technology, candidate.app_id):
        raise ScopeMismatch("technology", technology.app_id, candidate.app_id)
    if not role_in_app_scope(role, candidate.app_id):
        raise ScopeMismatch("role-app", role.app_id, candidate.app_id)
    if not role_in_technology_scope(role, candidate.technology_id):
        raise ScopeMismatch("role-technology", role.technology_id, candidate.technology_id)

    if candidate.is_primary and candidate.resource_id is not None:
        existing = _existing_primary(candidate, existing_capabilities)
        if existing is not None:
            raise DuplicatePrimary(existing.id)


def find_violation(
    taxonomy: TaxonomyGraph,
    candidate: Candidate,
    existing_capabilities: Iterable[Capability] = (),
) -> Optional[ConstraintViolation]:
    try:
        validate(taxonomy, candidate, existing_capabilities)
    except ConstraintViolation as exc:
        return exc
    return None


def is_legal_triple(taxonomy: TaxonomyGraph, app_id: int, technology_id: int, role_id: int) -> bool:
    candidate = Candidate(app_id=app_id, technology_id=technology_id, role_id=role_id)
    return find_violation(taxonomy, candidate) is None


def _existing_primary(
    candidate: Candidate, capabilities: Iterable[Capability]
) -> Optional[Capability]:
    for capability in capabilities:
        if capability.resource_id != candidate.resource_id:
            continue
        if not capability.is_active or not capability.is_primary:
            continue
        if candidate.exclude_capability_id is not None and capability.id == candidate.exclude_capability_id:
            continue
        return capability
    return None
