"""
Server configuration.

Values come from environment variables, after loading the repository `.env`
(if present) without overriding variables already set in the process.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

from dotenv import load_dotenv

from devicepilot.api.oai_client import (
    DEFAULT_TRANSCRIBE_BASE_URL,
    DEFAULT_TRANSCRIBE_MODEL,
    LLMConfig,
)

_DEFAULT_ENV_FILENAME = ".env"


def _load_repo_dotenv(explicit_path: Optional[Union[str, Path]] = None) -> Optional[Path]:
    """
    Load environment variables from the repo's `.env`.

    Returns the path that was loaded (if any).
    """
    if explicit_path:
        dot_path = Path(explicit_path).expanduser().resolve()
        if dot_path.is_file():
            load_dotenv(dot_path, override=False)
            return dot_path
        return None

    repo_root = Path(__file__).resolve().parents[1]
    dot_path = repo_root / _DEFAULT_ENV_FILENAME
    if dot_path.is_file():
        load_dotenv(str(dot_path), override=False)
        return dot_path
    return None


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _get_str(env: Mapping[str, str], name: str) -> Optional[str]:
    raw = env.get(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the orchestrator server."""

    host: str = "0.0.0.0"
    port: int = 8080
    public_ws_url: Optional[str] = None

    llm_provider: Optional[str] = None
    llm_api_key: Optional[str] = None
    llm_model: Optional[str] = None
    llm_base_url: Optional[str] = None

    transcribe_api_key: Optional[str] = None
    transcribe_base_url: str = DEFAULT_TRANSCRIBE_BASE_URL
    transcribe_model: str = DEFAULT_TRANSCRIBE_MODEL

    max_steps: int = 30
    stuck_threshold: int = 3
    context_steps: int = 6
    max_elements: int = 40

    command_timeout: float = 30.0
    reasoning_timeout: float = 60.0
    transcription_timeout: float = 30.0
    auth_timeout: float = 10.0
    heartbeat_interval: float = 20.0
    heartbeat_timeout: float = 60.0

    log_level: str = "INFO"

    @property
    def ws_url(self) -> str:
        if self.public_ws_url:
            return self.public_ws_url
        host = "localhost" if self.host in ("0.0.0.0", "") else self.host
        return f"ws://{host}:{self.port}/ws/device"

    def default_llm_config(self) -> Optional[LLMConfig]:
        """Server-wide reasoning configuration, or None when not configured."""
        if not self.llm_provider:
            return None
        if not self.llm_api_key and self.llm_provider != "ollama":
            return None
        return LLMConfig(
            provider=self.llm_provider,
            api_key=self.llm_api_key or "",
            model=self.llm_model,
            base_url=self.llm_base_url,
        )


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    *,
    dotenv_path: Optional[Union[str, Path]] = None,
) -> Settings:
    """
    Build `Settings` from `env` (defaults to `os.environ` after loading `.env`).
    """
    if env is None:
        _load_repo_dotenv(dotenv_path)
        env = os.environ

    return Settings(
        host=_get_str(env, "DEVICEPILOT_HOST") or "0.0.0.0",
        port=_get_int(env, "DEVICEPILOT_PORT", 8080),
        public_ws_url=_get_str(env, "DEVICEPILOT_WS_URL"),
        llm_provider=(_get_str(env, "LLM_PROVIDER") or "").lower() or None,
        llm_api_key=_get_str(env, "LLM_API_KEY"),
        llm_model=_get_str(env, "LLM_MODEL"),
        llm_base_url=_get_str(env, "LLM_BASE_URL"),
        transcribe_api_key=_get_str(env, "TRANSCRIBE_API_KEY") or _get_str(env, "GROQ_API_KEY"),
        transcribe_base_url=_get_str(env, "TRANSCRIBE_BASE_URL") or DEFAULT_TRANSCRIBE_BASE_URL,
        transcribe_model=_get_str(env, "TRANSCRIBE_MODEL") or DEFAULT_TRANSCRIBE_MODEL,
        max_steps=_get_int(env, "AGENT_MAX_STEPS", 30),
        stuck_threshold=_get_int(env, "AGENT_STUCK_THRESHOLD", 3),
        context_steps=_get_int(env, "AGENT_CONTEXT_STEPS", 6),
        max_elements=_get_int(env, "SANITIZER_MAX_ELEMENTS", 40),
        command_timeout=_get_float(env, "COMMAND_TIMEOUT", 30.0),
        reasoning_timeout=_get_float(env, "REASONING_TIMEOUT", 60.0),
        transcription_timeout=_get_float(env, "TRANSCRIPTION_TIMEOUT", 30.0),
        auth_timeout=_get_float(env, "AUTH_TIMEOUT", 10.0),
        heartbeat_interval=_get_float(env, "HEARTBEAT_INTERVAL", 20.0),
        heartbeat_timeout=_get_float(env, "HEARTBEAT_TIMEOUT", 60.0),
        log_level=(_get_str(env, "LOG_LEVEL") or "INFO").upper(),
    )


__all__ = ["Settings", "load_settings"]
