"""Profile configuration loader and path resolver."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from clawbot.llm import DEFAULT_MAX_OUTPUT_TOKENS, DEFAULT_MODEL, DEFAULT_TEMPERATURE
from clawbot.memory.conversation_store import DEFAULT_MAX_HISTORY
from clawbot.memory.persistence import DEFAULT_FLUSH_INTERVAL_SECONDS
from clawbot.quota import QuotaConfig


@dataclass(frozen=True)
class ProfilePaths:
    base_data_dir: Path
    logs_dir: Path
    secrets_dir: Path
    state_path: Path


@dataclass(frozen=True)
class Profile:
    name: str
    display_name: str
    health_host: str
    health_port: int
    llm_model: str
    llm_temperature: float
    llm_max_output_tokens: int
    llm_timeout_seconds: int
    max_history: int
    prompt_context_turns: int
    quota: QuotaConfig
    persistence_interval_seconds: int
    paths: ProfilePaths


class ProfileError(ValueError):
    """Raised when profile configuration is invalid."""


def _validate_raw_profile(raw: dict[str, Any], expected_name: str) -> None:
    required = {"name", "display_name"}
    missing = required.difference(raw.keys())
    if missing:
        missing_joined = ", ".join(sorted(missing))
        raise ProfileError(f"Missing required profile keys: {missing_joined}")

    if raw["name"] != expected_name:
        raise ProfileError(
            f"Profile filename/name mismatch: expected '{expected_name}', got '{raw['name']}'"
        )

    for section in ("quota", "persistence"):
        if section in raw and not isinstance(raw[section], dict):
            raise ProfileError(f"{section} must be a mapping")


def _positive_int(raw: dict[str, Any], key: str, default: int) -> int:
    value = raw.get(key, default)
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ProfileError(f"{key} must be an integer, got {value!r}") from exc
    if parsed < 1:
        raise ProfileError(f"{key} must be positive, got {parsed}")
    return parsed


def _quota_config(raw: dict[str, Any]) -> QuotaConfig:
    try:
        return QuotaConfig(
            daily_limit=int(raw.get("daily_limit", QuotaConfig.daily_limit)),
            ample_above=int(raw.get("ample_above", QuotaConfig.ample_above)),
            low_above=int(raw.get("low_above", QuotaConfig.low_above)),
        )
    except (TypeError, ValueError) as exc:
        raise ProfileError(f"Invalid quota settings: {exc}") from exc


def load_profile(profile_name: str, repo_root: Path | None = None) -> Profile:
    """Load a profile from config and resolve data paths."""
    if repo_root is None:
        repo_root = Path(__file__).resolve().parent.parent

    profile_path = repo_root / "config" / "profiles" / f"{profile_name}.yaml"
    if not profile_path.exists():
        raise ProfileError(f"Profile not found: {profile_path}")

    with profile_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    if not isinstance(raw, dict):
        raise ProfileError(f"Profile file must contain a mapping: {profile_path}")

    _validate_raw_profile(raw, profile_name)

    persistence = raw.get("persistence") or {}
    if raw.get("data_dir"):
        base_data_dir = Path(str(raw["data_dir"])).expanduser()
    else:
        base_data_dir = Path.home() / "clawbotdata" / profile_name
    state_file = persistence.get("state_file")
    paths = ProfilePaths(
        base_data_dir=base_data_dir,
        logs_dir=base_data_dir / "logs",
        secrets_dir=base_data_dir / "secrets",
        state_path=Path(str(state_file)).expanduser() if state_file else base_data_dir / "state.json",
    )

    return Profile(
        name=raw["name"],
        display_name=raw["display_name"],
        health_host=str(raw.get("health_host", "0.0.0.0")),
        health_port=int(raw.get("health_port", 3000)),
        llm_model=str(raw.get("llm_model", DEFAULT_MODEL)).strip() or DEFAULT_MODEL,
        llm_temperature=float(raw.get("llm_temperature", DEFAULT_TEMPERATURE)),
        llm_max_output_tokens=_positive_int(raw, "llm_max_output_tokens", DEFAULT_MAX_OUTPUT_TOKENS),
        llm_timeout_seconds=max(5, min(120, _positive_int(raw, "llm_timeout_seconds", 20))),
        max_history=_positive_int(raw, "max_history", DEFAULT_MAX_HISTORY),
        prompt_context_turns=_positive_int(raw, "prompt_context_turns", 5),
        quota=_quota_config(raw.get("quota") or {}),
        persistence_interval_seconds=_positive_int(
            persistence, "interval_seconds", DEFAULT_FLUSH_INTERVAL_SECONDS
        ),
        paths=paths,
    )


def ensure_profile_directories(profile: Profile) -> None:
    """Create profile directories without touching existing data."""
    profile.paths.base_data_dir.mkdir(parents=True, exist_ok=True)
    profile.paths.logs_dir.mkdir(parents=True, exist_ok=True)
    profile.paths.secrets_dir.mkdir(parents=True, exist_ok=True)
    profile.paths.state_path.parent.mkdir(parents=True, exist_ok=True)
