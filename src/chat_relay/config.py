"""Configuration loading utilities for the chat relay.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CHAT_RELAY_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``CHAT_RELAY__`` (e.g., CHAT_RELAY__GENERATION__MAX_NEW_TOKENS=512).

The raw dict is what the rest of the app passes around; the ``*Settings``
dataclasses are typed views over its sections.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PATH = "CHAT_RELAY_CONFIG"
ENV_PREFIX = "CHAT_RELAY__"

DEFAULT_DIRECTIVE = (
    "You are a helpful assistant in a group chat. Answer questions directly "
    "and honestly, and say so when you are unsure."
)

DEFAULTS: Dict[str, Any] = {
    "model": {
        "model_path": "models/model.gguf",
        "n_gpu_layers": None,
        "use_mlock": True,
        "use_mmap": True,
    },
    "generation": {
        "max_new_tokens": 1024,
        "batch_ceiling": 4096,
        "context_ceiling": 32768,
        "n_threads": 6,
        "limit_includes_prompt": True,
    },
    "sampling": {
        "strategy": "mirostat",
        "seed": 42,
        "tau": 5.0,
        "eta": 0.1,
        "temperature": 0.7,
        "top_k": 50,
        "top_p": 0.9,
        "penalty_last_n": 64,
        "repeat_penalty": 1.2,
    },
    "history": {
        "window": 5,
        "directive": DEFAULT_DIRECTIVE,
        "directive_placement": "prepend",
        "rollback_on_failure": True,
    },
    "links": {
        "enabled": True,
        "timeout": 10.0,
        "max_chars": 4000,
        "user_agent": "ChatRelay/0.1 (+https://local)",
    },
    "server": {
        "cors_origins": ["*"],
        "max_message_length": 2000,
    },
}


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix CHAT_RELAY__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., CHAT_RELAY__SAMPLING__TAU -> cfg["sampling"]["tau"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the chat relay.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CHAT_RELAY_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Built-in defaults merged with the file, environment overrides applied.
    """
    if path is None:
        path = os.environ.get(ENV_PATH, "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("config file not found at %s; using defaults", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, cfg))


# -----------------------------
# Typed section views
# -----------------------------

def _section(cfg: Optional[Dict[str, Any]], name: str) -> Dict[str, Any]:
    merged = dict(DEFAULTS[name])
    merged.update((cfg or {}).get(name) or {})
    return merged


@dataclass(frozen=True)
class GenerationSettings:
    max_new_tokens: int = 1024
    batch_ceiling: int = 4096
    context_ceiling: int = 32768
    n_threads: int = 6
    limit_includes_prompt: bool = True

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> "GenerationSettings":
        s = _section(cfg, "generation")
        return cls(
            max_new_tokens=int(s["max_new_tokens"]),
            batch_ceiling=int(s["batch_ceiling"]),
            context_ceiling=int(s["context_ceiling"]),
            n_threads=int(s["n_threads"]),
            limit_includes_prompt=bool(s["limit_includes_prompt"]),
        )


@dataclass(frozen=True)
class SamplingSettings:
    strategy: str = "mirostat"   # "mirostat" | "chain"
    seed: int = 42
    tau: float = 5.0
    eta: float = 0.1
    temperature: float = 0.7
    top_k: int = 50
    top_p: float = 0.9
    penalty_last_n: int = 64
    repeat_penalty: float = 1.2

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> "SamplingSettings":
        s = _section(cfg, "sampling")
        return cls(
            strategy=str(s["strategy"]).strip().lower(),
            seed=int(s["seed"]),
            tau=float(s["tau"]),
            eta=float(s["eta"]),
            temperature=float(s["temperature"]),
            top_k=int(s["top_k"]),
            top_p=float(s["top_p"]),
            penalty_last_n=int(s["penalty_last_n"]),
            repeat_penalty=float(s["repeat_penalty"]),
        )


@dataclass(frozen=True)
class HistorySettings:
    window: int = 5
    directive: str = DEFAULT_DIRECTIVE
    directive_placement: str = "prepend"   # "prepend" | "seed"
    rollback_on_failure: bool = True

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> "HistorySettings":
        s = _section(cfg, "history")
        placement = str(s["directive_placement"]).strip().lower()
        if placement not in {"prepend", "seed"}:
            raise RuntimeError(f"Invalid history.directive_placement: {placement!r}")
        return cls(
            window=int(s["window"]),
            directive=str(s["directive"] or "").strip(),
            directive_placement=placement,
            rollback_on_failure=bool(s["rollback_on_failure"]),
        )


@dataclass(frozen=True)
class LinkSettings:
    enabled: bool = True
    timeout: float = 10.0
    max_chars: int = 4000
    user_agent: str = "ChatRelay/0.1 (+https://local)"

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> "LinkSettings":
        s = _section(cfg, "links")
        return cls(
            enabled=bool(s["enabled"]),
            timeout=float(s["timeout"]),
            max_chars=int(s["max_chars"]),
            user_agent=str(s["user_agent"]),
        )
