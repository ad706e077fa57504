from __future__ import annotations

import pytest

from fakes import DEV_ID, MANAGEMENT_ID, PROD_ID, STAGING_ID, FakeClientFactory, FakeClock, FakeCloud
from foundation_bootstrap import output
from foundation_bootstrap.aws import BootstrapContext
from foundation_bootstrap.config import validate

ACCOUNTS = {"dev": DEV_ID, "staging": STAGING_ID, "prod": PROD_ID}


@pytest.fixture(autouse=True)
def _quiet_debug() -> None:
    output.set_verbose(False)
    yield
    output.set_verbose(False)


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def accounts() -> dict:
    return dict(ACCOUNTS)


@pytest.fixture
def make_ctx(cloud, clock, tmp_path):
    """Build a BootstrapContext over the fake cloud; keyword args override config keys."""

    def build(**overrides) -> BootstrapContext:
        raw = {
            "project_short_name": "acme",
            "project_name": "acme-site",
            "github_repo": "acme/acme-site",
            "management_account_id": MANAGEMENT_ID,
            "output_dir": str(tmp_path / "output"),
            "max_workers": 1,
        }
        raw.update(overrides)
        return BootstrapContext(
            config=validate(raw),
            clients=FakeClientFactory(cloud),
            sleep=clock.sleep,
            clock=clock.monotonic,
        )

    return build


@pytest.fixture
def seeded_cloud(cloud) -> FakeCloud:
    """An organization with the Workloads/acme-site OUs and three ACTIVE member accounts."""
    cloud.enable_organization()
    workloads = cloud.add_ou("Workloads", cloud.root_id)
    project = cloud.add_ou("acme-site", workloads["Id"])
    for env, account_id in ACCOUNTS.items():
        cloud.add_account(f"acme-{env}", account_id, f"aws+acme-{env}@example.com", parent=project["Id"])
    return cloud
