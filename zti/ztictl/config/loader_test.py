from pathlib import Path

import pytest

from zti.concurrency_group.concurrency_group import ConcurrencyGroup
from zti.ztictl.aws.clients import AwsClientFactory
from zti.ztictl.config.data_types import ROOT_CONFIG_FILENAME
from zti.ztictl.config.data_types import ZtictlConfig
from zti.ztictl.config.loader import build_context
from zti.ztictl.config.loader import get_home_dir
from zti.ztictl.config.loader import load_config
from zti.ztictl.config.loader import resolve_region
from zti.ztictl.errors import ConfigError
from zti.ztictl.errors import ConfigParseError
from zti.ztictl.errors import ValidationError
from zti.ztictl.primitives import LogLevel
from zti.ztictl.primitives import Region


def _write_settings(home_dir: Path, content: str) -> None:
    home_dir.mkdir(parents=True, exist_ok=True)
    (home_dir / ROOT_CONFIG_FILENAME).write_text(content)


def test_get_home_dir_prefers_env(tmp_path: Path) -> None:
    assert get_home_dir({"ZTICTL_HOME": str(tmp_path)}) == tmp_path
    assert get_home_dir({}) == Path("~/.ztictl").expanduser()


def test_load_config_defaults_without_file(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing", environ={})

    assert config == ZtictlConfig(state_dir=config.state_dir)
    assert config.transfer_threshold_bytes == 1024 * 1024
    assert config.default_region is None


def test_load_config_reads_settings_file(tmp_path: Path) -> None:
    _write_settings(
        tmp_path,
        'default_region = "eu-west-1"\n'
        "poll_interval_seconds = 0.5\n"
        'state_dir = "~/ztiaws-state"\n'
        "\n[logging]\n"
        'console_level = "DEBUG"\n',
    )

    config = load_config(tmp_path, environ={})

    assert config.default_region == "eu-west-1"
    assert config.poll_interval_seconds == 0.5
    assert config.state_dir == Path("~/ztiaws-state").expanduser()
    assert config.logging.console_level == LogLevel.DEBUG


def test_env_overrides_settings_file(tmp_path: Path) -> None:
    _write_settings(tmp_path, 'default_region = "eu-west-1"\n')

    config = load_config(
        tmp_path,
        environ={"AWS_REGION": "us-west-2", "AWS_DEFAULT_REGION": "ap-south-1", "ZTICTL_STATE_DIR": "/srv/zti"},
    )

    assert config.default_region == "us-west-2"
    assert config.state_dir == Path("/srv/zti")


def test_ztictl_region_wins_over_aws_region(tmp_path: Path) -> None:
    config = load_config(tmp_path, environ={"ZTICTL_REGION": "ca-central-1", "AWS_REGION": "us-west-2"})

    assert config.default_region == "ca-central-1"


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    _write_settings(tmp_path, "pole_interval_seconds = 1\n")

    with pytest.raises(ConfigParseError, match="pole_interval_seconds"):
        load_config(tmp_path, environ={})


def test_unknown_logging_keys_are_rejected(tmp_path: Path) -> None:
    _write_settings(tmp_path, "[logging]\nlevel = 'debug'\n")

    with pytest.raises(ConfigParseError, match="level"):
        load_config(tmp_path, environ={})


@pytest.mark.parametrize(
    "content",
    [
        "this is not toml",
        "poll_interval_seconds = -1\n",
        "transfer_threshold_bytes = 0\n",
        'default_region = "not a region"\n',
    ],
)
def test_invalid_settings_raise_config_parse_error(tmp_path: Path, content: str) -> None:
    _write_settings(tmp_path, content)

    with pytest.raises(ConfigParseError):
        load_config(tmp_path, environ={})


def test_resolve_region_precedence() -> None:
    config = ZtictlConfig(default_region=Region("eu-west-1"))

    assert resolve_region(config, "us-west-2") == "us-west-2"
    assert resolve_region(config, None) == "eu-west-1"
    assert resolve_region(ZtictlConfig(), None, fallback=Region("us-east-1")) == "us-east-1"


def test_resolve_region_without_any_source_raises() -> None:
    with pytest.raises(ConfigError, match="No AWS region"):
        resolve_region(ZtictlConfig(), None)


def test_resolve_region_rejects_malformed_flag() -> None:
    with pytest.raises(ValidationError, match="Invalid region"):
        resolve_region(ZtictlConfig(), "Canada")


def test_build_context_creates_real_client_factory(tmp_path: Path, cg: ConcurrencyGroup) -> None:
    config = ZtictlConfig(aws_max_attempts=3)

    ctx = build_context(config, Region("ca-central-1"), tmp_path, cg)

    assert isinstance(ctx.clients, AwsClientFactory)
    assert ctx.region == "ca-central-1"
    assert ctx.concurrency_group is cg


def test_resolve_parallelism() -> None:
    assert ZtictlConfig().resolve_parallelism(4) == 4
    assert ZtictlConfig(default_parallelism=2).resolve_parallelism(None) == 2
    assert ZtictlConfig().resolve_parallelism(None) >= 1
    with pytest.raises(ValueError):
        ZtictlConfig().resolve_parallelism(0)
