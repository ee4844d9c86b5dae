import asyncio
import json
from types import SimpleNamespace
from typing import Any

from convomem.config import ConvomemConfig
from convomem.providers import (
    DEFAULT_SYSTEM_PROMPT,
    OpenAICompletionProvider,
    build_prompt_messages,
    context_as_json,
    describe_user_context,
)


class FakeCompletions:
    def __init__(self, reply: str | None) -> None:
        self.reply = reply
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(reply: str | None) -> tuple[Any, FakeCompletions]:
    completions = FakeCompletions(reply)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def test_openai_provider_sends_model_and_options() -> None:
    client, completions = _client("Hello again")
    provider = OpenAICompletionProvider(model="gpt-test", client=client)

    reply = asyncio.run(
        provider.complete([{"role": "user", "content": "hi"}], temperature=0.2)
    )

    assert reply == "Hello again"
    assert completions.calls == [
        {"model": "gpt-test", "messages": [{"role": "user", "content": "hi"}], "temperature": 0.2}
    ]


def test_openai_provider_empty_content_is_blank() -> None:
    client, _ = _client(None)
    provider = OpenAICompletionProvider(model="gpt-test", client=client)

    assert asyncio.run(provider.complete([])) == ""


def test_openai_provider_from_config(monkeypatch) -> None:
    captured: dict[str, Any] = {}

    def _fake_init(self, model, api_key=None, base_url=None, timeout=30.0, client=None):
        captured.update(model=model, api_key=api_key, base_url=base_url, timeout=timeout)

    monkeypatch.setattr(OpenAICompletionProvider, "__init__", _fake_init)
    config = ConvomemConfig(
        completion_model="local-llm",
        completion_api_key="sk-test",
        completion_base_url="http://localhost:8080/v1",
        completion_timeout_s=12,
    )

    OpenAICompletionProvider.from_config(config)

    assert captured == {
        "model": "local-llm",
        "api_key": "sk-test",
        "base_url": "http://localhost:8080/v1",
        "timeout": 12.0,
    }


def _user_context() -> dict[str, Any]:
    return {
        "user_profile": {
            "preferred_name": "Sam",
            "therapy_goals": ["sleep better"],
            "coping_strategies": ["breathing", "walks"],
            "communication_style": "direct",
        },
        "recent_memories": [{"message": "Rough week at work"}, {"message": "  "}],
        "emotional_patterns": {
            "trend": "improving",
            "average_sentiment": 0.25,
            "triggers": [{"trigger": "deadline"}],
        },
    }


def test_describe_user_context() -> None:
    text = describe_user_context(_user_context())

    assert text.splitlines() == [
        "The user prefers to be called Sam.",
        "Goals: sleep better",
        "Coping strategies: breathing, walks",
        "Communication style: direct",
        "Recent emotional trend: improving (average sentiment 0.25)",
        "Frequent stressors: deadline",
        "Recent things the user said:",
        "- Rough week at work",
    ]
    assert describe_user_context({}) == ""


def test_build_prompt_messages_splices_context_and_history() -> None:
    history = [
        {"role": "user", "content": "earlier question"},
        {"role": "assistant", "content": "earlier answer"},
        {"role": "tool", "content": "ignored"},
        {"role": "user", "content": ""},
    ]

    messages = build_prompt_messages(_user_context(), history, "what now?")

    assert messages[0]["role"] == "system"
    assert messages[0]["content"].startswith(DEFAULT_SYSTEM_PROMPT)
    assert "The user prefers to be called Sam." in messages[0]["content"]
    assert [m["role"] for m in messages[1:]] == ["user", "assistant", "user"]
    assert messages[-1] == {"role": "user", "content": "what now?"}


def test_build_prompt_messages_without_context_uses_plain_prompt() -> None:
    messages = build_prompt_messages({}, [], "hello", system_prompt="Be brief.")

    assert messages == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "hello"},
    ]


def test_context_as_json_handles_non_json_values() -> None:
    payload = json.loads(context_as_json({"when": object.__name__, "ids": {1}}))

    assert payload["when"] == "object"
    assert payload["ids"] == "{1}"
