import logging
import threading
from datetime import date

import pytest

from capability_engine.intervals import MalformedInterval
from capability_engine.ledger import AllocationLedger, LedgerError
from capability_engine.models import Allocation, EngineConfig, ProficiencyLevel
from capability_engine.validator import DuplicatePrimary, ScopeMismatch

LEDGER_LOGGER = "capability_engine.ledger"


@pytest.fixture
def ledger(taxonomy):
    return AllocationLedger(taxonomy)


def _alloc(pct, start=None, end=None, **overrides):
    values = dict(
        id=None,
        resource_id=7,
        project_id=500,
        allocation_percentage=pct,
        start_date=start,
        end_date=end,
    )
    values.update(overrides)
    return Allocation(**values)


class TestCapabilities:
    def test_save_assigns_ids(self, ledger, make_capability):
        first = ledger.save_capability(make_capability(id=None))
        second = ledger.save_capability(
            make_capability(id=None, technology_id=10, role_id=100, is_primary=False)
        )
        assert (first.id, second.id) == (1, 2)
        assert [cap.id for cap in ledger.capabilities_for(7)] == [1, 2]

    def test_second_primary_is_rejected_and_not_stored(self, ledger, make_capability):
        ledger.save_capability(make_capability(id=1))
        with pytest.raises(DuplicatePrimary):
            ledger.save_capability(make_capability(id=2, technology_id=10, role_id=100))
        assert [cap.id for cap in ledger.active_capabilities()] == [1]

    def test_update_in_place_keeps_primary(self, ledger, make_capability):
        ledger.save_capability(make_capability(id=1))
        updated = ledger.save_capability(
            make_capability(id=1, proficiency_level=ProficiencyLevel.EXPERT)
        )
        assert ledger.capability(1) == updated
        assert ledger.capability(1).proficiency_level is ProficiencyLevel.EXPERT

    def test_illegal_triple_is_rejected(self, ledger, make_capability):
        with pytest.raises(ScopeMismatch):
            ledger.save_capability(make_capability(id=1, app_id=2))
        with pytest.raises(LedgerError):
            ledger.capability(1)

    def test_deactivated_primary_frees_the_slot(self, ledger, make_capability):
        ledger.save_capability(make_capability(id=1))
        ledger.deactivate_capability(1)
        saved = ledger.save_capability(make_capability(id=2, technology_id=10, role_id=100))
        assert saved.is_primary
        assert not ledger.capability(1).is_active


class TestRecommendations:
    def test_recommend_uses_config_defaults(self, taxonomy, make_capability, make_requirement):
        ledger = AllocationLedger(taxonomy, EngineConfig(top_n=1))
        ledger.save_capability(make_capability(id=1, resource_id=1, is_primary=False))
        ledger.save_capability(make_capability(id=2, resource_id=2))
        ledger.save_requirement(make_requirement(id=10))
        assert [m.capability.id for m in ledger.recommend(10)] == [2]
        assert [m.score for m in ledger.rank_candidates(10)] == [100, 97]
        assert ledger.rank_candidates(10, min_score=98)[0].capability.id == 2

    def test_unknown_requirement(self, ledger):
        with pytest.raises(LedgerError) as excinfo:
            ledger.recommend(404)
        assert excinfo.value.entity_kind == "requirement"


class TestAllocations:
    def test_create_scores_linked_allocation(self, ledger, make_capability, make_requirement):
        ledger.save_capability(make_capability(id=1, is_primary=False))
        ledger.save_requirement(make_requirement(id=3))
        allocation, report = ledger.create_allocation(
            _alloc(50, resource_capability_id=1, project_requirement_id=3)
        )
        assert allocation.id == 1
        assert allocation.match_score == 97
        assert report.max_load == 50
        assert not report.is_over_allocated

    def test_overlap_logs_warning(self, ledger, caplog):
        ledger.create_allocation(_alloc(60, date(2025, 1, 1), date(2025, 3, 1)))
        with caplog.at_level(logging.WARNING, logger=LEDGER_LOGGER):
            _, report = ledger.create_allocation(_alloc(50, date(2025, 2, 1), date(2025, 4, 1)))
        assert report.max_load == 110
        assert [record.levelno for record in caplog.records] == [logging.WARNING]
        assert "2025-02-01 to 2025-03-01" in caplog.records[0].getMessage()

    def test_escalation_logs_error(self, ledger, caplog):
        ledger.create_allocation(_alloc(80))
        with caplog.at_level(logging.WARNING, logger=LEDGER_LOGGER):
            _, report = ledger.create_allocation(_alloc(50))
        assert report.max_load == 130
        assert [record.levelno for record in caplog.records] == [logging.ERROR]

    def test_malformed_create_is_rolled_back(self, ledger):
        ledger.create_allocation(_alloc(40))
        with pytest.raises(MalformedInterval):
            ledger.create_allocation(_alloc(30, date(2025, 3, 1), date(2025, 2, 1)))
        assert [a.allocation_percentage for a in ledger.allocations_for(7)] == [40]

    def test_update_reruns_analysis(self, ledger):
        ledger.create_allocation(_alloc(60, date(2025, 1, 1), date(2025, 2, 1)))
        second, _ = ledger.create_allocation(_alloc(60, date(2025, 2, 1), date(2025, 3, 1)))
        assert ledger.load_report(7).max_load == 60
        _, report = ledger.update_allocation(second.id, start_date=date(2025, 1, 15))
        assert report.max_load == 120
        assert report.peak_start == date(2025, 1, 15)

    def test_malformed_update_restores_previous(self, ledger):
        allocation, _ = ledger.create_allocation(_alloc(60, date(2025, 1, 1), date(2025, 2, 1)))
        with pytest.raises(MalformedInterval):
            ledger.update_allocation(allocation.id, allocation_percentage=-5)
        assert ledger.allocation(allocation.id) == allocation

    def test_update_moves_between_resources(self, ledger):
        allocation, _ = ledger.create_allocation(_alloc(70))
        _, report = ledger.update_allocation(allocation.id, resource_id=8)
        assert report.resource_id == 8
        assert report.max_load == 70
        assert ledger.load_report(7).max_load == 0

    def test_update_relinks_match_score(self, ledger, make_capability, make_requirement):
        ledger.save_capability(make_capability(id=1))
        ledger.save_requirement(make_requirement(id=3))
        allocation, _ = ledger.create_allocation(_alloc(20))
        assert allocation.match_score is None
        updated, _ = ledger.update_allocation(
            allocation.id, resource_capability_id=1, project_requirement_id=3
        )
        assert updated.match_score == 100

    def test_delete_is_soft_and_lowers_load(self, ledger):
        first, _ = ledger.create_allocation(_alloc(70))
        ledger.create_allocation(_alloc(50))
        report = ledger.delete_allocation(first.id)
        assert report.max_load == 50
        assert not ledger.allocation(first.id).is_active
        with pytest.raises(LedgerError):
            ledger.update_allocation(first.id, allocation_percentage=10)


class InterleavingLedger(AllocationLedger):
    """Runs ``before_lock`` once, just before the next resource lock is taken."""

    before_lock = None

    def _resource_lock(self, resource_id):
        hook, self.before_lock = self.before_lock, None
        if hook is not None:
            hook()
        return super()._resource_lock(resource_id)


class TestConcurrentWrites:
    def test_one_primary_wins_under_contention(self, ledger, make_capability):
        workers = 8
        barrier = threading.Barrier(workers)
        saved, rejected = [], []

        def save(capability_id):
            barrier.wait()
            try:
                saved.append(ledger.save_capability(make_capability(id=capability_id)))
            except DuplicatePrimary as exc:
                rejected.append(exc)

        threads = [threading.Thread(target=save, args=(n,)) for n in range(1, workers + 1)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(saved) == 1
        assert len(rejected) == workers - 1
        assert {exc.existing_capability_id for exc in rejected} == {saved[0].id}
        assert [cap.id for cap in ledger.capabilities_for(7) if cap.is_primary] == [saved[0].id]

    def test_update_does_not_revive_deleted_allocation(self, taxonomy):
        ledger = InterleavingLedger(taxonomy)
        allocation, _ = ledger.create_allocation(_alloc(40))
        ledger.before_lock = lambda: ledger.delete_allocation(allocation.id)

        with pytest.raises(LedgerError):
            ledger.update_allocation(allocation.id, allocation_percentage=90)

        stored = ledger.allocation(allocation.id)
        assert not stored.is_active
        assert stored.allocation_percentage == 40

    def test_delete_follows_allocation_moved_to_other_resource(self, taxonomy):
        ledger = InterleavingLedger(taxonomy)
        allocation, _ = ledger.create_allocation(_alloc(40))
        ledger.before_lock = lambda: ledger.update_allocation(allocation.id, resource_id=8)

        report = ledger.delete_allocation(allocation.id)

        assert report.resource_id == 8
        assert report.max_load == 0
        stored = ledger.allocation(allocation.id)
        assert stored.resource_id == 8
        assert not stored.is_active

    def test_delete_twice_is_rejected(self, ledger):
        allocation, _ = ledger.create_allocation(_alloc(40))
        ledger.delete_allocation(allocation.id)
        with pytest.raises(LedgerError):
            ledger.delete_allocation(allocation.id)
