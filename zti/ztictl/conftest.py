from collections.abc import Generator
from pathlib import Path
from typing import Final

import pytest
from click.testing import CliRunner

from zti.concurrency_group.concurrency_group import ConcurrencyGroup
from zti.zti_common.primitives import NonNegativeFloat
from zti.zti_common.primitives import PositiveFloat
from zti.ztictl.config.data_types import ROOT_CONFIG_FILENAME
from zti.ztictl.config.data_types import ZtictlConfig
from zti.ztictl.config.data_types import ZtictlContext
from zti.ztictl.config.loader import HOME_ENV_VAR
from zti.ztictl.config.loader import REGION_ENV_VARS
from zti.ztictl.config.loader import STATE_DIR_ENV_VAR
from zti.ztictl.config.loader import build_context
from zti.ztictl.primitives import Region
from zti.ztictl.utils.testing import FakeAwsClientFactory

TEST_REGION: Final[Region] = Region("ca-central-1")

# Written into the test home so CLI runs poll and lock on a test-friendly schedule.
_FAST_SETTINGS: Final[str] = """\
poll_interval_seconds = 0.02
command_timeout_seconds = 20
propagation_delay_seconds = 0
lock_timeout_seconds = 2
lock_retry_interval_seconds = 0.05
registry_lock_timeout_seconds = 2

[logging]
max_log_files = 5
"""


@pytest.fixture
def cg() -> Generator[ConcurrencyGroup, None, None]:
    """Provide a ConcurrencyGroup for tests that poll or fan out."""
    with ConcurrencyGroup(name="test") as group:
        yield group


@pytest.fixture
def ztictl_home(tmp_path: Path) -> Path:
    home = tmp_path / ".ztictl"
    home.mkdir()
    return home


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture(autouse=True)
def setup_test_ztictl_env(
    tmp_path: Path,
    ztictl_home: Path,
    state_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Point every ztictl path at tmp_path and drop any region set in the real environment.

    HOME is moved too, so boto3 can never pick up real credentials or config.
    """
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv(HOME_ENV_VAR, str(ztictl_home))
    monkeypatch.setenv(STATE_DIR_ENV_VAR, str(state_dir))
    for name in REGION_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    (ztictl_home / ROOT_CONFIG_FILENAME).write_text(_FAST_SETTINGS)


@pytest.fixture
def fake_aws(tmp_path: Path) -> FakeAwsClientFactory:
    return FakeAwsClientFactory(tmp_path / "aws")


@pytest.fixture
def test_config(state_dir: Path) -> ZtictlConfig:
    return ZtictlConfig(
        state_dir=state_dir,
        poll_interval_seconds=PositiveFloat(0.02),
        command_timeout_seconds=PositiveFloat(20.0),
        propagation_delay_seconds=NonNegativeFloat(0.0),
        lock_timeout_seconds=PositiveFloat(2.0),
        lock_retry_interval_seconds=PositiveFloat(0.05),
        registry_lock_timeout_seconds=PositiveFloat(2.0),
    )


@pytest.fixture
def temp_ztictl_ctx(
    test_config: ZtictlConfig,
    ztictl_home: Path,
    fake_aws: FakeAwsClientFactory,
    cg: ConcurrencyGroup,
) -> ZtictlContext:
    """A context in TEST_REGION backed by the fake AWS clients."""
    return build_context(test_config, TEST_REGION, ztictl_home, cg, clients=fake_aws)


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()
