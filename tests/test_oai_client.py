from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import openai
import pytest

from devicepilot.api.oai_client import (
    LLMConfig,
    ReasoningClient,
    ReasoningError,
    TranscriptionClient,
    TranscriptionError,
    extract_json_object,
)
from devicepilot.orchestrator.tools import NEXT_ACTION_TOOL_NAME
from devicepilot.shared.data_types import ActionKind, SkillName, UnknownActionError

CONFIG = LLMConfig(provider="openai", api_key="sk-test")


class FakeCompletions:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        if self.outcome == "hang":
            await asyncio.sleep(10)
        return self.outcome


def fake_client(outcome):
    completions = FakeCompletions(outcome)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def tool_response(arguments) -> SimpleNamespace:
    call = SimpleNamespace(function=SimpleNamespace(name=NEXT_ACTION_TOOL_NAME, arguments=arguments))
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(tool_calls=[call], content=None))])


def text_response(content: str) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(tool_calls=None, content=content))])


async def test_decide_reads_tool_call():
    client, completions = fake_client(
        tool_response(json.dumps({"action": "tap", "query": "Settings", "reason": "open it"}))
    )

    decision, reasoning = await ReasoningClient(CONFIG, client=client).decide([{"role": "user", "content": "hi"}])

    assert decision.kind is ActionKind.TAP
    assert decision.query == "Settings"
    assert reasoning == "open it"
    request = completions.calls[0]
    assert request["model"] == "gpt-4o"
    assert request["tools"][0]["function"]["name"] == NEXT_ACTION_TOOL_NAME


async def test_decide_falls_back_to_json_in_content():
    content = 'Here you go:\n```json\n{"skill": "find_and_tap", "query": "Wi-Fi"}\n```'
    client, _ = fake_client(text_response(content))

    decision, _ = await ReasoningClient(CONFIG, client=client).decide([])

    assert decision.kind is SkillName.FIND_AND_TAP
    assert decision.query == "Wi-Fi"


async def test_unknown_action_propagates():
    client, _ = fake_client(tool_response({"action": "fly"}))
    with pytest.raises(UnknownActionError):
        await ReasoningClient(CONFIG, client=client).decide([])


@pytest.mark.parametrize(
    "outcome",
    [
        openai.OpenAIError("HTTP 500"),
        tool_response("{not json"),
        tool_response(json.dumps({"query": "missing action"})),
        text_response("I am not sure what to do."),
        SimpleNamespace(choices=[]),
    ],
)
async def test_reasoning_failures_become_reasoning_errors(outcome):
    client, _ = fake_client(outcome)
    with pytest.raises(ReasoningError):
        await ReasoningClient(CONFIG, client=client).decide([])


async def test_reasoning_timeout():
    client, _ = fake_client("hang")
    with pytest.raises(ReasoningError, match="timed out"):
        await ReasoningClient(CONFIG, client=client, timeout=0.01).decide([])


def test_llm_config_validation_and_defaults():
    assert LLMConfig(provider="ollama", api_key="").resolved_base_url == "http://localhost:11434/v1"
    assert LLMConfig(provider="groq", api_key="k").resolved_model == "llama-3.3-70b-versatile"
    assert LLMConfig(provider="custom", api_key="k", base_url="http://llm:8000/v1").resolved_model == "gpt-4o"
    assert CONFIG.redacted()["api_key"] == "***"
    with pytest.raises(ValueError):
        LLMConfig(provider="openai", api_key="")
    with pytest.raises(ValueError):
        LLMConfig(provider="mystery", api_key="k")


def test_extract_json_object_requires_an_object():
    assert extract_json_object('noise {"action": "back"} trailing') == {"action": "back"}
    with pytest.raises(ReasoningError):
        extract_json_object("no braces here")


async def test_transcription_strips_text_and_wraps_errors():
    calls = []

    async def create(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(text="  turn on wifi \n")

    client = SimpleNamespace(audio=SimpleNamespace(transcriptions=SimpleNamespace(create=create)))
    transcriber = TranscriptionClient(api_key="gsk", client=client)

    assert await transcriber.transcribe(b"RIFF") == "turn on wifi"
    assert calls[0]["model"] == "whisper-large-v3"
    assert calls[0]["file"] == ("audio.wav", b"RIFF", "audio/wav")

    async def failing(**kwargs):
        raise openai.OpenAIError("quota exceeded")

    broken = SimpleNamespace(audio=SimpleNamespace(transcriptions=SimpleNamespace(create=failing)))
    with pytest.raises(TranscriptionError):
        await TranscriptionClient(api_key="gsk", client=broken).transcribe(b"RIFF")


async def test_analyze_sends_plain_completion_and_returns_content():
    client, completions = fake_client(text_response('{"hints": ["Tap Send"], "analysis": "ok"}'))

    reply = await ReasoningClient(CONFIG, client=client).analyze("system", "APP: com.whatsapp")

    assert reply == '{"hints": ["Tap Send"], "analysis": "ok"}'
    request = completions.calls[0]
    assert "tools" not in request
    assert request["messages"] == [
        {"role": "system", "content": "system"},
        {"role": "user", "content": "APP: com.whatsapp"},
    ]


async def test_analyze_translates_sdk_errors():
    client, _ = fake_client(openai.OpenAIError("rate limited"))
    with pytest.raises(ReasoningError, match="rate limited"):
        await ReasoningClient(CONFIG, client=client).analyze("system", "user")
