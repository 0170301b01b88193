from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from hypolab.constants import (
    AUTO_INSTALL_MAX_ROUNDS,
    AUTO_INSTALL_MAX_ROUNDS_CAP,
    DATASET_TOP_K,
    DATASET_TOP_K_MAX,
    DEFAULT_MAX_RETRIES,
    PIP_INSTALL_TIMEOUT_MS,
    POLICY_FILE_NAME,
    RUNNER_TIMEOUT_MS,
    VENV_SETUP_TIMEOUT_MS,
)
from hypolab.models import ConfigError
from hypolab.utils import _env_name, _resolve_config_dir

_FALSE_TOKENS = {"0", "false", "off", "no"}


# ---------------------------------------------------------------------------
# Environment readers
# ---------------------------------------------------------------------------


def _environ(env: Mapping[str, str] | None) -> Mapping[str, str]:
    return os.environ if env is None else env


def _read_bool_env(name: str, *, default: bool, env: Mapping[str, str] | None = None) -> bool:
    raw = str(_environ(env).get(_env_name(name), "")).strip().lower()
    if not raw:
        return default
    return raw not in _FALSE_TOKENS


def _read_flag_env(name: str, *, env: Mapping[str, str] | None = None) -> bool:
    """Opt-in toggles: only the literal value ``1`` enables them."""
    return str(_environ(env).get(_env_name(name), "")).strip() == "1"


def _read_positive_int_env(name: str, *, env: Mapping[str, str] | None = None) -> int | None:
    raw = str(_environ(env).get(_env_name(name), "")).strip()
    if not raw:
        return None
    try:
        parsed = int(float(raw))
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _read_str_env(name: str, *, env: Mapping[str, str] | None = None) -> str:
    return str(_environ(env).get(_env_name(name), "")).strip()


# ---------------------------------------------------------------------------
# Policy file
# ---------------------------------------------------------------------------


def _load_policy(config_dir: Path) -> dict[str, Any]:
    policy_path = config_dir / POLICY_FILE_NAME
    if not policy_path.exists():
        return {}
    try:
        loaded = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    except Exception:
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _policy_section(policy: dict[str, Any], name: str) -> dict[str, Any]:
    section = policy.get(name)
    return section if isinstance(section, dict) else {}


def _policy_int(section: dict[str, Any], key: str, default: int) -> int:
    value = section.get(key, default)
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"policy value {key}={value!r} must be an integer") from exc
    if parsed <= 0:
        raise ConfigError(f"policy value {key}={value!r} must be positive")
    return parsed


def _policy_tiers(section: dict[str, Any], key: str, default: tuple[tuple[int, int], ...]) -> tuple[tuple[int, int], ...]:
    raw = section.get(key)
    if raw is None:
        return default
    if not isinstance(raw, list):
        raise ConfigError(f"policy value {key} must be a list of [min_tokens, min_matches] pairs")
    tiers: list[tuple[int, int]] = []
    for item in raw:
        if not isinstance(item, (list, tuple)) or len(item) != 2:
            raise ConfigError(f"policy value {key} has malformed tier {item!r}")
        tiers.append((int(item[0]), int(item[1])))
    return tuple(sorted(tiers, reverse=True))


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InvocationSettings:
    deterministic: bool
    long_run: bool
    isolate_retry_sessions: bool
    max_retries: int
    model_endpoint: str
    model_name: str
    api_key: str


@dataclass(frozen=True)
class ExecutionSettings:
    runner_timeout_ms: int
    pip_install_timeout_ms: int
    venv_setup_timeout_ms: int
    use_venv: bool
    strict_venv: bool
    allow_system_pip: bool
    auto_install: bool
    auto_install_max_rounds: int
    python_bin: str
    venv_dir: str
    deterministic: bool


@dataclass(frozen=True)
class DiscoverySettings:
    web_discovery_enabled: bool
    literature_enabled: bool
    synthetic_fallback_enabled: bool
    top_k: int
    web_search_endpoint: str
    web_search_api_key: str


@dataclass(frozen=True)
class SemanticThresholds:
    # (minimum vocabulary size, minimum matches), largest first
    claim_tiers: tuple[tuple[int, int], ...] = ((9, 4), (6, 3), (3, 2), (1, 1))
    discovery_tiers: tuple[tuple[int, int], ...] = ((12, 4), (8, 3), (4, 2), (1, 1))
    claim_max_tokens: int = 18
    discovery_max_tokens: int = 24


def load_invocation_settings(
    config_dir: Path | None = None, env: Mapping[str, str] | None = None
) -> InvocationSettings:
    policy = _policy_section(_load_policy(config_dir or _resolve_config_dir(env)), "model")
    max_retries = _read_positive_int_env("MAX_RETRIES", env=env)
    if max_retries is None:
        max_retries = int(policy.get("max_retries", DEFAULT_MAX_RETRIES) or 0)
    return InvocationSettings(
        deterministic=_read_bool_env("DETERMINISTIC", default=False, env=env),
        long_run=_read_bool_env("LONG_RUN", default=False, env=env),
        isolate_retry_sessions=_read_bool_env(
            "ISOLATE_RETRY_SESSIONS",
            default=bool(policy.get("isolate_retry_sessions", False)),
            env=env,
        ),
        max_retries=max(0, max_retries),
        model_endpoint=_read_str_env("MODEL_ENDPOINT", env=env) or str(policy.get("endpoint", "") or ""),
        model_name=_read_str_env("MODEL", env=env) or str(policy.get("name", "default") or "default"),
        api_key=_read_str_env("API_KEY", env=env),
    )


def load_execution_settings(
    config_dir: Path | None = None, env: Mapping[str, str] | None = None
) -> ExecutionSettings:
    policy = _policy_section(_load_policy(config_dir or _resolve_config_dir(env)), "execution")
    deterministic = _read_bool_env("DETERMINISTIC", default=False, env=env)
    strict_venv = _read_bool_env("STRICT_VENV", default=deterministic, env=env)
    rounds = _read_positive_int_env("AUTO_INSTALL_MAX_ROUNDS", env=env)
    if rounds is None:
        rounds = _policy_int(policy, "auto_install_max_rounds", AUTO_INSTALL_MAX_ROUNDS)
    return ExecutionSettings(
        runner_timeout_ms=_read_positive_int_env("RUNNER_TIMEOUT_MS", env=env)
        or _policy_int(policy, "runner_timeout_ms", RUNNER_TIMEOUT_MS),
        pip_install_timeout_ms=_read_positive_int_env("PIP_INSTALL_TIMEOUT_MS", env=env)
        or _policy_int(policy, "pip_install_timeout_ms", PIP_INSTALL_TIMEOUT_MS),
        venv_setup_timeout_ms=_read_positive_int_env("VENV_SETUP_TIMEOUT_MS", env=env)
        or _policy_int(policy, "venv_setup_timeout_ms", VENV_SETUP_TIMEOUT_MS),
        use_venv=_read_bool_env("USE_VENV", default=True, env=env),
        strict_venv=strict_venv,
        allow_system_pip=(not strict_venv) and _read_bool_env("ALLOW_SYSTEM_PIP", default=False, env=env),
        auto_install=_read_bool_env("AUTO_INSTALL_PY_DEPS", default=True, env=env),
        auto_install_max_rounds=min(AUTO_INSTALL_MAX_ROUNDS_CAP, max(1, rounds)),
        python_bin=_read_str_env("PYTHON_BIN", env=env),
        venv_dir=_read_str_env("VENV_DIR", env=env),
        deterministic=deterministic,
    )


def load_discovery_settings(
    config_dir: Path | None = None, env: Mapping[str, str] | None = None
) -> DiscoverySettings:
    policy = _policy_section(_load_policy(config_dir or _resolve_config_dir(env)), "discovery")
    top_k = _read_positive_int_env("DATASET_TOP_K", env=env) or _policy_int(policy, "top_k", DATASET_TOP_K)
    return DiscoverySettings(
        web_discovery_enabled=_read_bool_env(
            "WEB_DATASET_DISCOVERY", default=bool(policy.get("web_discovery", True)), env=env
        ),
        literature_enabled=_read_bool_env(
            "LITERATURE_AFFINITY", default=bool(policy.get("literature_affinity", True)), env=env
        ),
        synthetic_fallback_enabled=_read_flag_env("SYNTHETIC_FIELD_FALLBACK", env=env),
        top_k=min(DATASET_TOP_K_MAX, max(1, top_k)),
        web_search_endpoint=_read_str_env("WEB_SEARCH_ENDPOINT", env=env)
        or str(policy.get("web_search_endpoint", "") or ""),
        web_search_api_key=_read_str_env("WEB_SEARCH_API_KEY", env=env),
    )


def load_semantic_thresholds(config_dir: Path | None = None, env: Mapping[str, str] | None = None) -> SemanticThresholds:
    policy = _policy_section(_load_policy(config_dir or _resolve_config_dir(env)), "semantic")
    defaults = SemanticThresholds()
    return SemanticThresholds(
        claim_tiers=_policy_tiers(policy, "claim_tiers", defaults.claim_tiers),
        discovery_tiers=_policy_tiers(policy, "discovery_tiers", defaults.discovery_tiers),
        claim_max_tokens=_policy_int(policy, "claim_max_tokens", defaults.claim_max_tokens),
        discovery_max_tokens=_policy_int(policy, "discovery_max_tokens", defaults.discovery_max_tokens),
    )
