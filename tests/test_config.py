from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from hypolab.config import (
    SemanticThresholds,
    load_discovery_settings,
    load_execution_settings,
    load_invocation_settings,
    load_semantic_thresholds,
)
from hypolab.models import ConfigError


def _write_policy(config_dir: Path, policy: dict) -> None:
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "policy.yaml").write_text(yaml.safe_dump(policy, sort_keys=False), encoding="utf-8")


def test_execution_settings_defaults(tmp_path: Path) -> None:
    settings = load_execution_settings(tmp_path, env={})

    assert settings.runner_timeout_ms == 20_000
    assert settings.pip_install_timeout_ms == 120_000
    assert settings.venv_setup_timeout_ms == 120_000
    assert settings.use_venv is True
    assert settings.strict_venv is False
    assert settings.allow_system_pip is False
    assert settings.auto_install is True
    assert settings.auto_install_max_rounds == 3


def test_execution_settings_env_overrides_policy(tmp_path: Path) -> None:
    _write_policy(tmp_path, {"execution": {"runner_timeout_ms": 5000, "auto_install_max_rounds": 2}})

    from_policy = load_execution_settings(tmp_path, env={})
    from_env = load_execution_settings(
        tmp_path, env={"HYPOLAB_RUNNER_TIMEOUT_MS": "750", "HYPOLAB_AUTO_INSTALL_MAX_ROUNDS": "99"}
    )

    assert from_policy.runner_timeout_ms == 5000
    assert from_policy.auto_install_max_rounds == 2
    assert from_env.runner_timeout_ms == 750
    assert from_env.auto_install_max_rounds == 6


def test_non_positive_env_ints_are_ignored(tmp_path: Path) -> None:
    settings = load_execution_settings(tmp_path, env={"HYPOLAB_RUNNER_TIMEOUT_MS": "-5"})

    assert settings.runner_timeout_ms == 20_000


def test_deterministic_mode_defaults_strict_venv_and_blocks_system_pip(tmp_path: Path) -> None:
    settings = load_execution_settings(
        tmp_path, env={"HYPOLAB_DETERMINISTIC": "1", "HYPOLAB_ALLOW_SYSTEM_PIP": "1"}
    )

    assert settings.deterministic is True
    assert settings.strict_venv is True
    assert settings.allow_system_pip is False


@pytest.mark.parametrize("raw", ["0", "false", "OFF", "no"])
def test_false_tokens_disable_boolean_flags(tmp_path: Path, raw: str) -> None:
    settings = load_execution_settings(tmp_path, env={"HYPOLAB_USE_VENV": raw})

    assert settings.use_venv is False


def test_discovery_settings_synthetic_fallback_is_opt_in(tmp_path: Path) -> None:
    assert load_discovery_settings(tmp_path, env={}).synthetic_fallback_enabled is False
    assert load_discovery_settings(tmp_path, env={"HYPOLAB_SYNTHETIC_FIELD_FALLBACK": "true"}).synthetic_fallback_enabled is False
    assert load_discovery_settings(tmp_path, env={"HYPOLAB_SYNTHETIC_FIELD_FALLBACK": "1"}).synthetic_fallback_enabled is True


def test_discovery_settings_top_k_is_clamped(tmp_path: Path) -> None:
    _write_policy(tmp_path, {"discovery": {"top_k": 40, "web_search_endpoint": "https://search.example/v1"}})

    settings = load_discovery_settings(tmp_path, env={})

    assert settings.top_k == 12
    assert settings.web_search_endpoint == "https://search.example/v1"
    assert settings.web_discovery_enabled is True


def test_invocation_settings_read_model_policy(tmp_path: Path) -> None:
    _write_policy(tmp_path, {"model": {"endpoint": "https://model.example", "name": "m-large", "max_retries": 4}})

    settings = load_invocation_settings(tmp_path, env={"HYPOLAB_API_KEY": "k"})

    assert settings.model_endpoint == "https://model.example"
    assert settings.model_name == "m-large"
    assert settings.max_retries == 4
    assert settings.api_key == "k"
    assert settings.isolate_retry_sessions is False


def test_semantic_thresholds_from_policy(tmp_path: Path) -> None:
    _write_policy(tmp_path, {"semantic": {"claim_tiers": [[1, 1], [5, 3]], "claim_max_tokens": 10}})

    thresholds = load_semantic_thresholds(tmp_path, env={})

    assert thresholds.claim_tiers == ((5, 3), (1, 1))
    assert thresholds.claim_max_tokens == 10
    assert thresholds.discovery_tiers == SemanticThresholds().discovery_tiers


def test_malformed_policy_value_raises_config_error(tmp_path: Path) -> None:
    _write_policy(tmp_path, {"execution": {"runner_timeout_ms": "soon"}})

    with pytest.raises(ConfigError, match="runner_timeout_ms"):
        load_execution_settings(tmp_path, env={})
