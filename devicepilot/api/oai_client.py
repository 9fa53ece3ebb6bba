"""
Async wrappers around OpenAI-compatible endpoints.

- `ReasoningClient`: chat completions with the `next_action` function tool,
  returning a validated `ActionDecision`, plus plain-text session analysis.
- `TranscriptionClient`: audio transcription (Groq Whisper by default).

Any provider exposing the OpenAI wire format works through `base_url`
(OpenAI, Groq, OpenRouter, a local Ollama).

Requires: openai>=1.0.0
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import openai
from openai import AsyncOpenAI

from devicepilot.orchestrator.tools import NEXT_ACTION_TOOL_NAME, next_action_tool
from devicepilot.shared.data_types import ActionDecision, UnknownActionError
from devicepilot.utils.logger import StructuredLogger

Message = Dict[str, Any]

PROVIDER_BASE_URLS: Dict[str, Optional[str]] = {
    "openai": None,
    "groq": "https://api.groq.com/openai/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "ollama": "http://localhost:11434/v1",
}

PROVIDER_DEFAULT_MODELS: Dict[str, str] = {
    "openai": "gpt-4o",
    "groq": "llama-3.3-70b-versatile",
    "openrouter": "openai/gpt-4o",
    "ollama": "llama3.2",
}

DEFAULT_REASONING_TIMEOUT = 60.0
DEFAULT_TRANSCRIPTION_TIMEOUT = 30.0
DEFAULT_TRANSCRIBE_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_TRANSCRIBE_MODEL = "whisper-large-v3"

_JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")


class ReasoningError(RuntimeError):
    """Network failure, timeout, or malformed payload from the reasoning service."""


class TranscriptionError(RuntimeError):
    """Network failure or timeout from the transcription service."""


@dataclass(frozen=True)
class LLMConfig:
    """Provider, credentials and model for one reasoning client."""

    provider: str
    api_key: str
    model: Optional[str] = None
    base_url: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.provider or not self.provider.strip():
            raise ValueError("provider must be a non-empty string.")
        if self.provider not in PROVIDER_BASE_URLS and not self.base_url:
            raise ValueError(
                f"Unknown provider {self.provider!r}; supply base_url for custom OpenAI-compatible endpoints."
            )
        if not self.api_key and self.provider != "ollama":
            raise ValueError("api_key must be a non-empty string.")

    @property
    def resolved_model(self) -> str:
        return self.model or PROVIDER_DEFAULT_MODELS.get(self.provider, PROVIDER_DEFAULT_MODELS["openai"])

    @property
    def resolved_base_url(self) -> Optional[str]:
        return self.base_url or PROVIDER_BASE_URLS.get(self.provider)

    def redacted(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.resolved_model,
            "base_url": self.resolved_base_url,
            "api_key": "***" if self.api_key else None,
        }


def _build_async_client(api_key: str, base_url: Optional[str], timeout: float) -> AsyncOpenAI:
    client_kwargs: Dict[str, Any] = {"api_key": api_key or "not-needed", "timeout": timeout}
    if base_url:
        client_kwargs["base_url"] = base_url
    return AsyncOpenAI(**client_kwargs)


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def parse_decision_arguments(raw: Any) -> Dict[str, Any]:
    """Decode tool-call arguments (JSON string or dict) into a dict."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        raise ReasoningError("Reasoning service returned empty tool arguments.")
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ReasoningError(f"Tool arguments are not valid JSON: {exc}") from exc
    if not isinstance(decoded, dict):
        raise ReasoningError("Tool arguments must decode to a JSON object.")
    return decoded


def extract_json_object(text: str) -> Dict[str, Any]:
    """Pull the first JSON object out of free text (tolerates markdown fences)."""
    match = _JSON_OBJECT_PATTERN.search(text or "")
    if not match:
        raise ReasoningError("Reasoning service returned neither a tool call nor a JSON object.")
    return parse_decision_arguments(match.group(0))


class ReasoningClient:
    """Chooses the next action through an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        config: LLMConfig,
        *,
        timeout: float = DEFAULT_REASONING_TIMEOUT,
        client: Optional[Any] = None,
    ) -> None:
        self._config = config
        self._timeout = timeout
        self._client = client or _build_async_client(config.api_key, config.resolved_base_url, timeout)
        self._logger = StructuredLogger(__name__)

    @property
    def config(self) -> LLMConfig:
        return self._config

    async def complete(self, messages: List[Message], **kwargs: Any) -> Any:
        payload: Dict[str, Any] = {
            "model": self._config.resolved_model,
            "messages": messages,
            "tools": [next_action_tool()],
            "tool_choice": "auto",
        }
        payload.update(kwargs)
        return await self._create(payload)

    async def _create(self, payload: Dict[str, Any]) -> Any:
        try:
            return await asyncio.wait_for(self._client.chat.completions.create(**payload), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise ReasoningError(f"Reasoning request timed out after {self._timeout:g}s") from exc
        except openai.OpenAIError as exc:
            raise ReasoningError(f"Reasoning request failed: {exc}") from exc

    async def analyze(self, system_prompt: str, user_prompt: str) -> str:
        """Plain-text completion without tools; returns the message content."""
        response = await self._create(
            {
                "model": self._config.resolved_model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            }
        )
        choices = _field(response, "choices") or []
        if not choices:
            raise ReasoningError("Reasoning service returned no choices.")
        return _field(_field(choices[0], "message"), "content") or ""

    async def decide(self, messages: List[Message]) -> Tuple[ActionDecision, Optional[str]]:
        """
        Request one decision.

        Returns the decision and the model's stated reasoning. Raises
        ReasoningError for transport/format failures and UnknownActionError
        when the model names an action outside the vocabulary.
        """
        response = await self.complete(messages)
        choices = _field(response, "choices") or []
        if not choices:
            raise ReasoningError("Reasoning service returned no choices.")
        message = _field(choices[0], "message")

        arguments: Optional[Dict[str, Any]] = None
        for call in _field(message, "tool_calls") or []:
            function = _field(call, "function")
            if _field(function, "name") == NEXT_ACTION_TOOL_NAME:
                arguments = parse_decision_arguments(_field(function, "arguments"))
                break
        if arguments is None:
            content = _field(message, "content") or ""
            self._logger.debug("No tool call in reasoning response; parsing message content.")
            arguments = extract_json_object(content)

        try:
            decision = ActionDecision.from_payload(arguments)
        except UnknownActionError:
            raise
        except (TypeError, ValueError) as exc:
            raise ReasoningError(f"Malformed decision payload: {exc}") from exc
        return decision, decision.reason


class TranscriptionClient:
    """Speech-to-text through an OpenAI-compatible transcription endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: Optional[str] = DEFAULT_TRANSCRIBE_BASE_URL,
        model: str = DEFAULT_TRANSCRIBE_MODEL,
        timeout: float = DEFAULT_TRANSCRIPTION_TIMEOUT,
        client: Optional[Any] = None,
    ) -> None:
        self._model = model
        self._timeout = timeout
        self._client = client or _build_async_client(api_key, base_url, timeout)

    @property
    def model(self) -> str:
        return self._model

    async def transcribe(self, wav_bytes: bytes, *, filename: str = "audio.wav") -> str:
        try:
            result = await asyncio.wait_for(
                self._client.audio.transcriptions.create(
                    file=(filename, wav_bytes, "audio/wav"),
                    model=self._model,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TranscriptionError(f"Transcription timed out after {self._timeout:g}s") from exc
        except openai.OpenAIError as exc:
            raise TranscriptionError(f"Transcription failed: {exc}") from exc
        text = _field(result, "text")
        return (text or "").strip()


__all__ = [
    "DEFAULT_TRANSCRIBE_BASE_URL",
    "DEFAULT_TRANSCRIBE_MODEL",
    "LLMConfig",
    "PROVIDER_BASE_URLS",
    "ReasoningClient",
    "ReasoningError",
    "TranscriptionClient",
    "TranscriptionError",
    "extract_json_object",
    "parse_decision_arguments",
]
