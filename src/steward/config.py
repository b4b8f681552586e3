"""
Runtime configuration for Steward.

Configuration comes from an optional YAML file with STEWARD_* environment
variables layered on top. Every setting has a default, so Steward runs with
no configuration at all (in-memory policies, ./steward.db).

Example steward.yaml:
    db_path: /var/lib/steward/steward.db
    policy_dir: ./policies
    tool_timeout_seconds: 15
    proposal_ttl_seconds: 3600
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from steward.errors import ConfigError
from steward.policy.store import (
    HttpPolicySource,
    MappingPolicySource,
    PolicySource,
    YamlPolicySource,
)

ENV_PREFIX = "STEWARD_"
DEFAULT_CONFIG_PATH = Path("steward.yaml")


class StewardConfig(BaseModel):
    """
    Process-wide Steward settings.

    Attributes:
        db_path: SQLite file for proposals and audit records
        policy_dir: Directory of <tenant>.yaml policy files
        policy_url: Base URL of a policy service (takes precedence over policy_dir)
        policy_timeout_seconds: Bound on one policy fetch
        tool_timeout_seconds: Default bound on one tool invocation
        proposal_ttl_seconds: How long a proposal stays pending
        max_proposal_ttl_seconds: Upper bound for any requested TTL
        log_level: Logging level name for the CLI
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    db_path: Path = Field(default=Path("steward.db"))
    policy_dir: Path | None = None
    policy_url: str | None = None
    policy_timeout_seconds: float = Field(default=5.0, gt=0)
    tool_timeout_seconds: float = Field(default=30.0, gt=0)
    proposal_ttl_seconds: int = Field(default=24 * 3600, gt=0)
    max_proposal_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    log_level: str = "WARNING"

    @model_validator(mode="after")
    def ttl_within_cap(self) -> "StewardConfig":
        if self.proposal_ttl_seconds > self.max_proposal_ttl_seconds:
            msg = (
                f"proposal_ttl_seconds ({self.proposal_ttl_seconds}) exceeds "
                f"max_proposal_ttl_seconds ({self.max_proposal_ttl_seconds})"
            )
            raise ValueError(msg)
        return self


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name in StewardConfig.model_fields:
        value = environ.get(ENV_PREFIX + name.upper())
        if value is not None and value != "":
            overrides[name] = value
    return overrides


def load_config(
    path: Path | str | None = None,
    environ: dict[str, str] | None = None,
) -> StewardConfig:
    """
    Load configuration from YAML and the environment.

    Args:
        path: Config file. If None, ./steward.yaml is used when present.
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated StewardConfig

    Raises:
        ConfigError: If an explicit file is missing, or the merged
            settings are not valid
    """
    environ = dict(os.environ if environ is None else environ)
    data: dict[str, Any] = {}

    config_path = Path(path) if path is not None else None
    if config_path is None and DEFAULT_CONFIG_PATH.exists():
        config_path = DEFAULT_CONFIG_PATH

    if config_path is not None:
        try:
            with config_path.open() as f:
                loaded = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise ConfigError(
                message=f"Config file not found: {config_path}",
                path=str(config_path),
            ) from e
        except yaml.YAMLError as e:
            raise ConfigError(
                message=f"Invalid YAML in {config_path}: {e}",
                path=str(config_path),
            ) from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(
                message=f"Config file must contain a mapping: {config_path}",
                path=str(config_path),
            )
        data.update(loaded or {})

    data.update(_env_overrides(environ))

    try:
        return StewardConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            message=f"Invalid configuration: {e.errors()[0]['msg']}",
            path=str(config_path or "<env>"),
            suggestion="Check field names and value types in steward.yaml",
        ) from e


def build_policy_source(config: StewardConfig) -> PolicySource:
    """
    Choose the policy source a config describes.

    policy_url wins over policy_dir. With neither, an empty in-memory source
    is returned, which makes every tenant fall back to the safe default.
    """
    if config.policy_url:
        return HttpPolicySource(config.policy_url)
    if config.policy_dir is not None:
        return YamlPolicySource(config.policy_dir)
    return MappingPolicySource({})
