import shutil
from pathlib import Path

import pytest

from capability_engine.models import (
    Application,
    Capability,
    ProficiencyLevel,
    Requirement,
    Role,
    Technology,
)
from capability_engine.taxonomy import TaxonomyGraph

SAMPLE_PORTFOLIO = Path(__file__).resolve().parent.parent / "portfolios" / "sample"


@pytest.fixture
def taxonomy():
    """Two scoped apps, one global technology and roles at every scoping level."""
    return TaxonomyGraph.build(
        apps=[
            Application(id=1, name="Core Banking"),
            Application(id=2, name="Customer Portal"),
        ],
        technologies=[
            Technology(id=10, name="Java"),
            Technology(id=11, name="COBOL", app_id=1),
            Technology(id=12, name="React", app_id=2),
        ],
        roles=[
            Role(id=100, name="Developer"),
            Role(id=101, name="Mainframe Engineer", app_id=1, technology_id=11),
            Role(id=102, name="Frontend Lead", app_id=2),
            Role(id=103, name="Java Specialist", technology_id=10),
        ],
    )


@pytest.fixture
def make_capability():
    def _make(**overrides):
        values = dict(
            id=1,
            resource_id=7,
            app_id=1,
            technology_id=11,
            role_id=101,
            proficiency_level=ProficiencyLevel.ADVANCED,
            years_of_experience=5,
            is_primary=True,
        )
        values.update(overrides)
        return Capability(**values)

    return _make


@pytest.fixture
def make_requirement():
    def _make(**overrides):
        values = dict(
            id=1,
            project_id=500,
            app_id=1,
            technology_id=11,
            role_id=101,
            proficiency_level=ProficiencyLevel.ADVANCED,
            min_years_exp=5,
        )
        values.update(overrides)
        return Requirement(**values)

    return _make


@pytest.fixture
def portfolio(tmp_path):
    """Writable copy of the sample portfolio."""
    target = tmp_path / "sample"
    shutil.copytree(SAMPLE_PORTFOLIO, target)
    return target
