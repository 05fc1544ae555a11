"""YAML configuration with environment overrides."""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .session.controller import DEFAULT_LLM_TIMEOUT, DEFAULT_MAX_STEPS, SessionSettings
from .tools.safety import APPROVAL_ENV_VAR, ApprovalPolicy, parse_approval_policy

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "acode.yaml"
MAX_STEPS_ENV_VAR = "ACODE_MAX_STEPS"
API_KEY_ENV_VARS = ("ACODE_API_KEY", "OPENAI_API_KEY")

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "models": {
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4.1-mini",
        "timeout": DEFAULT_LLM_TIMEOUT,
        "temperature": None,
    },
    "session": {
        "max_steps": DEFAULT_MAX_STEPS,
        "approval_policy": ApprovalPolicy.AUTO.value,
        "approval_timeout": None,
        "guidance": [
            "Inspect files before editing them and keep patches focused.",
            "Use apply_patch for edits; run tests with the shell tool when they exist.",
        ],
    },
    "paths": {
        "workspace": ".",
        "sessions": ".acode/sessions",
        "logs": ".acode/logs",
    },
}


class ConfigError(RuntimeError):
    """Raised when the configuration file is missing or invalid."""


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ModelsConfig(_Section):
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4.1-mini"
    timeout: float = Field(default=DEFAULT_LLM_TIMEOUT, gt=0)
    temperature: Optional[float] = None


class SessionConfig(_Section):
    max_steps: int = DEFAULT_MAX_STEPS
    approval_policy: ApprovalPolicy = ApprovalPolicy.AUTO
    approval_timeout: Optional[float] = Field(default=None, gt=0)
    guidance: List[str] = Field(default_factory=list)

    @field_validator("approval_policy", mode="before")
    @classmethod
    def _lenient_policy(cls, value: Any) -> ApprovalPolicy:
        return parse_approval_policy(value)

    @field_validator("max_steps")
    @classmethod
    def _positive_steps(cls, value: int) -> int:
        return value if value > 0 else DEFAULT_MAX_STEPS


class PathsConfig(_Section):
    workspace: str = "."
    sessions: str = ".acode/sessions"
    logs: str = ".acode/logs"


class AppConfig(_Section):
    """Validated contents of ``acode.yaml``."""

    models: ModelsConfig = Field(default_factory=ModelsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    base_dir: Path = Field(default_factory=Path.cwd, exclude=True)

    def resolve(self, value: str) -> Path:
        """Resolve a configured path relative to the config file's directory."""
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        return path.resolve()

    @property
    def workspace(self) -> Path:
        return self.resolve(self.paths.workspace)

    @property
    def sessions_dir(self) -> Path:
        return self.resolve(self.paths.sessions)

    @property
    def logs_dir(self) -> Path:
        return self.resolve(self.paths.logs)

    def session_settings(self) -> SessionSettings:
        return SessionSettings(
            max_steps=self.session.max_steps,
            approval_policy=self.session.approval_policy,
            llm_timeout=self.models.timeout,
            approval_timeout=self.session.approval_timeout,
        )


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def apply_env_overrides(data: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    """Layer environment variables over raw configuration data."""
    session = dict(data.get("session") or {})
    policy = env.get(APPROVAL_ENV_VAR)
    if policy is not None and policy.strip():
        session["approval_policy"] = parse_approval_policy(policy).value
    raw_steps = env.get(MAX_STEPS_ENV_VAR)
    if raw_steps is not None and raw_steps.strip():
        try:
            session["max_steps"] = int(raw_steps)
        except ValueError:
            LOGGER.warning("Ignoring %s=%r: not an integer", MAX_STEPS_ENV_VAR, raw_steps)
    if session:
        data["session"] = session
    return data


def load_config(config_path: Path | str | None = None, *, env: Mapping[str, str] | None = None) -> AppConfig:
    """Load ``acode.yaml``; a missing file yields the defaults."""
    environ = env if env is not None else os.environ
    path = Path(config_path or DEFAULT_CONFIG_NAME).expanduser()
    data: Dict[str, Any] = {}
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
        except yaml.YAMLError as error:
            raise ConfigError(f"Failed to parse config {path}: {error}") from error
        if not isinstance(loaded, dict):
            raise ConfigError("Configuration must be a mapping at the top level.")
        data = loaded
    elif config_path is not None:
        raise ConfigError(f"Config file not found: {path}")

    data = apply_env_overrides(data, environ)
    try:
        config = AppConfig.model_validate(data)
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration in {path}: {error}") from error
    config.base_dir = path.resolve().parent
    return config


def resolve_api_key(env: Mapping[str, str] | None = None) -> str | None:
    environ = env if env is not None else os.environ
    for name in API_KEY_ENV_VARS:
        value = environ.get(name)
        if value and value.strip():
            return value.strip()
    return None


__all__ = [
    "API_KEY_ENV_VARS",
    "AppConfig",
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "MAX_STEPS_ENV_VAR",
    "ModelsConfig",
    "PathsConfig",
    "SessionConfig",
    "apply_env_overrides",
    "copy_config_template",
    "load_config",
    "resolve_api_key",
    "write_config",
]
