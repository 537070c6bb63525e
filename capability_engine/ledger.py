from __future__ import annotations

import itertools
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Iterator, List, Optional, Tuple

from .intervals import LoadReport, MalformedInterval, analyze_load
from .models import Allocation, Capability, EngineConfig, Requirement
from .scoring import Match, rank_candidates, recommend, score
from .taxonomy import TaxonomyGraph
from .validator import Candidate, validate

logger = logging.getLogger(__name__)


class LedgerError(LookupError):
    def __init__(self, entity_kind: str, entity_id: object) -> None:
        super().__init__(f"{entity_kind} {entity_id} not found")
        self.entity_kind = entity_kind
        self.entity_id = entity_id


class AllocationLedger:
    """In-memory catalog that validates, scores and load-checks every write.

    Writes touching one resource are serialized by that resource's lock, so
    the duplicate-primary check and the store happen atomically, and the load
    report returned from an allocation write reflects the committed state.
    """

    def __init__(self, taxonomy: TaxonomyGraph, config: Optional[EngineConfig] = None) -> None:
        self.taxonomy = taxonomy
        self.config = config or EngineConfig()
        self._capabilities: Dict[int, Capability] = {}
        self._requirements: Dict[int, Requirement] = {}
        self._allocations: Dict[int, Allocation] = {}
        self._resource_locks: Dict[int, threading.Lock] = defaultdict(threading.Lock)
        self._lock = threading.Lock()
        self._ids = defaultdict(lambda: itertools.count(1))

    def _resource_lock(self, resource_id: int) -> threading.Lock:
        with self._lock:
            return self._resource_locks[resource_id]

    def _next_id(self, kind: str, taken: Dict[int, object]) -> int:
        with self._lock:
            counter = self._ids[kind]
            candidate = next(counter)
            while candidate in taken:
                candidate = next(counter)
            return candidate

    def _snapshot(self, store: Dict[int, object]) -> list:
        with self._lock:
            return list(store.values())

    # Capabilities -----------------------------------------------------

    def save_capability(self, capability: Capability) -> Capability:
        with self._resource_lock(capability.resource_id):
            if capability.id is None:
                capability = replace(capability, id=self._next_id("capability", self._capabilities))
            validate(
                self.taxonomy,
                Candidate.from_capability(capability),
                self.capabilities_for(capability.resource_id),
            )
            self._capabilities[capability.id] = capability
        logger.info(
            "Resource capability saved: resource %s - app %s", capability.resource_id, capability.app_id
        )
        return capability

    def deactivate_capability(self, capability_id: int) -> Capability:
        capability = self.capability(capability_id)
        with self._resource_lock(capability.resource_id):
            capability = replace(self._capabilities[capability_id], is_active=False)
            self._capabilities[capability_id] = capability
        return capability

    def capability(self, capability_id: int) -> Capability:
        try:
            return self._capabilities[capability_id]
        except KeyError:
            raise LedgerError("capability", capability_id) from None

    def capabilities_for(self, resource_id: int) -> List[Capability]:
        return [
            cap
            for cap in self._snapshot(self._capabilities)
            if cap.resource_id == resource_id and cap.is_active
        ]

    def active_capabilities(self) -> List[Capability]:
        return [cap for cap in sorted(self._snapshot(self._capabilities), key=lambda c: c.id) if cap.is_active]

    # Requirements -----------------------------------------------------

    def save_requirement(self, requirement: Requirement) -> Requirement:
        validate(self.taxonomy, Candidate.from_requirement(requirement))
        if requirement.id is None:
            requirement = replace(requirement, id=self._next_id("requirement", self._requirements))
        self._requirements[requirement.id] = requirement
        return requirement

    def requirement(self, requirement_id: int) -> Requirement:
        try:
            return self._requirements[requirement_id]
        except KeyError:
            raise LedgerError("requirement", requirement_id) from None

    def rank_candidates(self, requirement_id: int, min_score: Optional[int] = None) -> List[Match]:
        threshold = self.config.min_match_score if min_score is None else min_score
        return rank_candidates(
            self.requirement(requirement_id),
            self.active_capabilities(),
            threshold,
            self.config.weights,
        )

    def recommend(self, requirement_id: int, top_n: Optional[int] = None) -> List[Match]:
        return recommend(
            self.requirement(requirement_id),
            self.active_capabilities(),
            self.config.top_n if top_n is None else top_n,
            self.config.min_match_score,
            self.config.weights,
        )

    # Allocations ------------------------------------------------------

    def _match_score_for(self, allocation: Allocation) -> Optional[int]:
        if allocation.resource_capability_id is None or allocation.project_requirement_id is None:
            return allocation.match_score
        capability = self._capabilities.get(allocation.resource_capability_id)
        requirement = self._requirements.get(allocation.project_requirement_id)
        if capability is None or requirement is None:
            return allocation.match_score
        return score(capability, requirement, self.config.weights)

    def create_allocation(self, allocation: Allocation) -> Tuple[Allocation, LoadReport]:
        with self._resource_lock(allocation.resource_id):
            if allocation.id is None:
                allocation = replace(allocation, id=self._next_id("allocation", self._allocations))
            allocation = replace(allocation, match_score=self._match_score_for(allocation))
            self._allocations[allocation.id] = allocation
            try:
                report = self._check_load(allocation.resource_id)
            except MalformedInterval:
                del self._allocations[allocation.id]
                raise
        return allocation, report

    @contextmanager
    def _locked_allocation(
        self, allocation_id: int, target_resource_id: Optional[int] = None
    ) -> Iterator[Allocation]:
        """Hold the locks of the allocation's resource (and ``target_resource_id``).

        Yields the allocation as committed once the locks are held. If it
        moved to another resource between the read and the acquire, the locks
        are dropped and taken again for the new owner.
        """
        while True:
            seen = self.allocation(allocation_id)
            resource_ids = {seen.resource_id}
            if target_resource_id is not None:
                resource_ids.add(target_resource_id)
            locks = [self._resource_lock(resource_id) for resource_id in sorted(resource_ids)]
            for lock in locks:
                lock.acquire()
            current = self._allocations[allocation_id]
            if current.resource_id == seen.resource_id:
                break
            for lock in reversed(locks):
                lock.release()
        try:
            if not current.is_active:
                raise LedgerError("allocation", allocation_id)
            yield current
        finally:
            for lock in reversed(locks):
                lock.release()

    def update_allocation(self, allocation_id: int, **changes: object) -> Tuple[Allocation, LoadReport]:
        with self._locked_allocation(allocation_id, changes.get("resource_id")) as current:
            updated = replace(current, **changes)
            if {"resource_capability_id", "project_requirement_id"} & set(changes):
                updated = replace(updated, match_score=self._match_score_for(updated))
            self._allocations[allocation_id] = updated
            try:
                report = self._check_load(updated.resource_id)
            except MalformedInterval:
                self._allocations[allocation_id] = current
                raise
            if current.resource_id != updated.resource_id:
                self._check_load(current.resource_id)
        return updated, report

    def delete_allocation(self, allocation_id: int) -> LoadReport:
        with self._locked_allocation(allocation_id) as current:
            self._allocations[allocation_id] = replace(current, is_active=False)
            return self._check_load(current.resource_id)

    def allocation(self, allocation_id: int) -> Allocation:
        try:
            return self._allocations[allocation_id]
        except KeyError:
            raise LedgerError("allocation", allocation_id) from None

    def allocations_for(self, resource_id: int) -> List[Allocation]:
        return [
            allocation
            for allocation in sorted(self._snapshot(self._allocations), key=lambda a: a.id)
            if allocation.resource_id == resource_id and allocation.is_active
        ]

    def load_report(self, resource_id: int) -> LoadReport:
        return analyze_load(
            self.allocations_for(resource_id),
            resource_id=resource_id,
            threshold=self.config.over_allocation_threshold_pct,
            tie_break=self.config.sweep_tie_break,
        )

    def _check_load(self, resource_id: int) -> LoadReport:
        report = self.load_report(resource_id)
        if report.max_load >= self.config.escalation_threshold_pct:
            logger.error("Resource %s over-allocated at %s", resource_id, report.describe())
        elif report.is_over_allocated:
            logger.warning("Resource %s over-allocated at %s", resource_id, report.describe())
        return report
