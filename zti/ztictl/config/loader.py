import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from typing import Final

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from zti.concurrency_group.concurrency_group import ConcurrencyGroup
from zti.ztictl.aws.clients import AwsClientFactory
from zti.ztictl.config.data_types import ROOT_CONFIG_FILENAME
from zti.ztictl.config.data_types import LoggingConfig
from zti.ztictl.config.data_types import ZtictlConfig
from zti.ztictl.config.data_types import ZtictlContext
from zti.ztictl.errors import ConfigError
from zti.ztictl.errors import ConfigParseError
from zti.ztictl.errors import ValidationError
from zti.ztictl.primitives import Region

HOME_ENV_VAR: Final[str] = "ZTICTL_HOME"
STATE_DIR_ENV_VAR: Final[str] = "ZTICTL_STATE_DIR"

# Checked in order; the first one set wins.
REGION_ENV_VARS: Final[tuple[str, ...]] = ("ZTICTL_REGION", "AWS_REGION", "AWS_DEFAULT_REGION")


def get_home_dir(environ: Mapping[str, str] | None = None) -> Path:
    """~/.ztictl, unless ZTICTL_HOME points elsewhere."""
    env = os.environ if environ is None else environ
    home = env.get(HOME_ENV_VAR)
    return Path(home).expanduser() if home else Path("~/.ztictl").expanduser()


def load_config(home_dir: Path, environ: Mapping[str, str] | None = None) -> ZtictlConfig:
    """Load and merge configuration from all sources.

    Precedence (lowest to highest):
    1. Defaults on ZtictlConfig
    2. The settings file (<home>/settings.toml)
    3. Environment variables (ZTICTL_REGION, AWS_REGION, AWS_DEFAULT_REGION, ZTICTL_STATE_DIR)
    4. CLI arguments (handled by caller)

    Unknown keys in the settings file raise ConfigParseError rather than being ignored.
    """
    env = os.environ if environ is None else environ
    config_dict: dict[str, Any] = {}

    config_path = home_dir / ROOT_CONFIG_FILENAME
    if config_path.exists():
        config_dict.update(_parse_config(_load_toml(config_path), config_path))

    for name in REGION_ENV_VARS:
        value = env.get(name)
        if value:
            config_dict["default_region"] = value
            break

    state_dir = env.get(STATE_DIR_ENV_VAR)
    if state_dir:
        config_dict["state_dir"] = Path(state_dir).expanduser()

    try:
        return ZtictlConfig.model_validate(config_dict)
    except PydanticValidationError as e:
        raise ConfigParseError(f"Invalid configuration: {e}") from e


def _load_toml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigParseError(f"Failed to parse {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e


def _check_unknown_fields(raw_config: Mapping[str, Any], model_class: type[BaseModel], context: str) -> None:
    """Raise ConfigParseError if raw_config contains fields not defined on model_class."""
    known_fields = set(model_class.model_fields.keys())
    unknown = set(raw_config.keys()) - known_fields
    if unknown:
        raise ConfigParseError(f"Unknown fields in {context}: {sorted(unknown)}. Valid fields: {sorted(known_fields)}")


def _parse_config(raw: dict[str, Any], path: Path) -> dict[str, Any]:
    _check_unknown_fields(raw, ZtictlConfig, str(path))
    parsed = dict(raw)
    raw_logging = parsed.get("logging")
    if raw_logging is not None:
        if not isinstance(raw_logging, dict):
            raise ConfigParseError(f"[logging] in {path} must be a table")
        _check_unknown_fields(raw_logging, LoggingConfig, f"{path} [logging]")
    if "state_dir" in parsed:
        parsed["state_dir"] = Path(str(parsed["state_dir"])).expanduser()
    return parsed


def resolve_region(config: ZtictlConfig, cli_region: str | None, fallback: Region | None = None) -> Region:
    """The --region flag wins over the configured default, which wins over fallback.

    Raises ConfigError if none of them is set.
    """
    raw = cli_region or config.default_region or fallback
    if not raw:
        raise ConfigError(
            "No AWS region given. Pass --region, set ZTICTL_REGION or AWS_REGION, "
            "or set default_region in settings.toml"
        )
    try:
        return Region(raw)
    except ValueError as e:
        raise ValidationError(str(e)) from e


def build_context(
    config: ZtictlConfig,
    region: Region,
    home_dir: Path,
    concurrency_group: ConcurrencyGroup,
    clients: AwsClientFactory | None = None,
) -> ZtictlContext:
    return ZtictlContext(
        config=config,
        region=region,
        home_dir=home_dir,
        clients=clients if clients is not None else AwsClientFactory(max_attempts=config.aws_max_attempts),
        concurrency_group=concurrency_group,
    )
