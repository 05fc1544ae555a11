from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from acode.config import (
    ConfigError,
    copy_config_template,
    load_config,
    resolve_api_key,
    write_config,
)
from acode.tools.safety import APPROVAL_ENV_VAR, ApprovalPolicy


def test_missing_default_config_yields_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    config = load_config(env={})

    assert config.session.max_steps == 10
    assert config.session.approval_policy is ApprovalPolicy.AUTO
    assert config.workspace == tmp_path.resolve()
    assert config.sessions_dir == (tmp_path / ".acode" / "sessions").resolve()


def test_template_round_trips_through_yaml(tmp_path: Path) -> None:
    path = tmp_path / "conf" / "acode.yaml"
    data = copy_config_template()
    data["session"]["approval_policy"] = "always_ask"
    data["paths"]["workspace"] = "project"

    write_config(path, data)
    config = load_config(path, env={})

    assert config.session.approval_policy is ApprovalPolicy.ALWAYS_ASK
    assert config.workspace == (tmp_path / "conf" / "project").resolve()
    assert config.session.guidance == data["session"]["guidance"]
    assert copy_config_template()["session"]["approval_policy"] == "auto"


def test_environment_overrides_file_values(tmp_path: Path) -> None:
    path = tmp_path / "acode.yaml"
    path.write_text(yaml.safe_dump({"session": {"max_steps": 4, "approval_policy": "always_ask"}}), encoding="utf-8")

    config = load_config(path, env={APPROVAL_ENV_VAR: "always_approve", "ACODE_MAX_STEPS": "6"})
    ignored = load_config(path, env={"ACODE_MAX_STEPS": "many"})

    assert config.session.approval_policy is ApprovalPolicy.ALWAYS_APPROVE
    assert config.session.max_steps == 6
    assert ignored.session.max_steps == 4


def test_lenient_policy_and_step_values(tmp_path: Path) -> None:
    path = tmp_path / "acode.yaml"
    path.write_text("session:\n  max_steps: 0\n  approval_policy: sometimes\n", encoding="utf-8")

    config = load_config(path, env={})

    assert config.session.max_steps == 10
    assert config.session.approval_policy is ApprovalPolicy.AUTO
    assert config.session_settings().resolved_max_steps() == 10


@pytest.mark.parametrize(
    "content, message",
    [
        ("models: [unclosed", "Failed to parse"),
        ("- just\n- a list\n", "mapping"),
        ("models:\n  unknown_key: 1\n", "Invalid configuration"),
    ],
)
def test_invalid_files_raise_config_error(tmp_path: Path, content: str, message: str) -> None:
    path = tmp_path / "acode.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError, match=message):
        load_config(path, env={})


def test_explicit_missing_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.yaml", env={})


def test_api_key_lookup_order() -> None:
    assert resolve_api_key({"OPENAI_API_KEY": "b", "ACODE_API_KEY": " a "}) == "a"
    assert resolve_api_key({"OPENAI_API_KEY": "b"}) == "b"
    assert resolve_api_key({}) is None
