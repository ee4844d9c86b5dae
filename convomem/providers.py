from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Sequence
from typing import Any, Protocol

from .config import ConvomemConfig

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a supportive, attentive conversational companion."


class CompletionProvider(Protocol):
    async def complete(self, messages: list[dict[str, str]], **options: Any) -> str: ...


class OpenAICompletionProvider:
    """Chat completions through any OpenAI-compatible endpoint."""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
        client: Any = None,
    ) -> None:
        self.model = model
        self.timeout = timeout
        if client is None:
            try:
                from openai import OpenAI
            except Exception as exc:  # pragma: no cover
                raise RuntimeError("openai package is required for completions") from exc
            client = OpenAI(
                api_key=api_key or os.getenv("OPENAI_API_KEY"),
                base_url=base_url,
                timeout=timeout,
            )
        self.client = client

    @classmethod
    def from_config(cls, config: ConvomemConfig) -> OpenAICompletionProvider:
        return cls(
            model=config.completion_model,
            api_key=config.completion_api_key,
            base_url=config.completion_base_url,
            timeout=float(config.completion_timeout_s),
        )

    def _create(self, messages: list[dict[str, str]], options: dict[str, Any]) -> str:
        resp = self.client.chat.completions.create(
            model=self.model, messages=messages, **options
        )
        return resp.choices[0].message.content or ""

    async def complete(self, messages: list[dict[str, str]], **options: Any) -> str:
        return await asyncio.wait_for(
            asyncio.to_thread(self._create, messages, options), timeout=self.timeout
        )


def describe_user_context(user_context: dict[str, Any]) -> str:
    profile = user_context.get("user_profile") or {}
    lines: list[str] = []
    name = profile.get("preferred_name")
    if name:
        lines.append(f"The user prefers to be called {name}.")
    for key, label in (
        ("therapy_goals", "Goals"),
        ("interests", "Interests"),
        ("triggers", "Known triggers"),
        ("coping_strategies", "Coping strategies"),
    ):
        values = profile.get(key) or []
        if values:
            lines.append(f"{label}: {', '.join(str(v) for v in values)}")
    style = profile.get("communication_style")
    if style:
        lines.append(f"Communication style: {style}")

    patterns = user_context.get("emotional_patterns") or {}
    trend = patterns.get("trend")
    if trend and patterns.get("average_sentiment") is not None:
        lines.append(
            f"Recent emotional trend: {trend} (average sentiment {patterns['average_sentiment']:.2f})"
        )
    triggers = [t.get("trigger") for t in patterns.get("triggers") or [] if t.get("trigger")]
    if triggers:
        lines.append(f"Frequent stressors: {', '.join(triggers)}")

    memories = user_context.get("recent_memories") or []
    if memories:
        lines.append("Recent things the user said:")
        for memory in memories[:5]:
            text = str(memory.get("message") or "").strip()
            if text:
                lines.append(f"- {text[:200]}")
    return "\n".join(lines)


def build_prompt_messages(
    user_context: dict[str, Any],
    history: Sequence[dict[str, str]],
    user_message: str,
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
) -> list[dict[str, str]]:
    """Assemble chat messages with the memory bundle spliced into the system turn."""

    context_text = describe_user_context(user_context)
    system = system_prompt
    if context_text:
        system = f"{system_prompt}\n\nWhat you know about the user:\n{context_text}"
    messages = [{"role": "system", "content": system}]
    for turn in history:
        role = turn.get("role")
        content = turn.get("content")
        if role in {"user", "assistant"} and content:
            messages.append({"role": role, "content": content})
    messages.append({"role": "user", "content": user_message})
    logger.debug("prompt assembled", extra={"messages": len(messages)})
    return messages


def context_as_json(user_context: dict[str, Any]) -> str:
    return json.dumps(user_context, ensure_ascii=False, indent=2, default=str)
