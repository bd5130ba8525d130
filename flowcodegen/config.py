"""Runtime settings, read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .ir.graph import ComplexityPolicy


_TRUE_STRINGS = {"1", "true", "yes", "on"}

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def _env_log_level(env: Mapping[str, str], key: str, default: str) -> str:
    level = str(env.get(key) or default).strip().upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"{key} must be one of {', '.join(LOG_LEVELS)} (got {env.get(key)!r})")
    return level


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        raise ValueError(f"{key} must be an integer (got {raw!r})") from None


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    return str(raw).strip().lower() in _TRUE_STRINGS


@dataclass(frozen=True)
class Settings:
    target: str = "python"
    fail_fast: bool = False
    log_level: str = "WARNING"
    complexity: ComplexityPolicy = field(default_factory=ComplexityPolicy)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from `FLOWCODEGEN_*` variables (defaults otherwise)."""
        env = os.environ if env is None else env
        defaults = ComplexityPolicy()
        return cls(
            target=str(env.get("FLOWCODEGEN_TARGET") or "python").strip().lower(),
            fail_fast=_env_bool(env, "FLOWCODEGEN_FAIL_FAST", False),
            log_level=_env_log_level(env, "FLOWCODEGEN_LOG_LEVEL", "WARNING"),
            complexity=ComplexityPolicy(
                simple_max_nodes=_env_int(env, "FLOWCODEGEN_SIMPLE_MAX_NODES", defaults.simple_max_nodes),
                moderate_max_nodes=_env_int(env, "FLOWCODEGEN_MODERATE_MAX_NODES", defaults.moderate_max_nodes),
                shallow_cycle_max_length=_env_int(
                    env, "FLOWCODEGEN_SHALLOW_CYCLE_MAX_LENGTH", defaults.shallow_cycle_max_length
                ),
            ),
        )
