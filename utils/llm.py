"""
OpenAI LLM helpers — the sync chat helpers used by classification and the
async agentic-turn provider used by the generation engine.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from openai import APIError, AsyncOpenAI, OpenAI, RateLimitError

import config
from models.errors import TurnTransportError
from models.schemas import Image, ToolCall, TurnResult

log = logging.getLogger(__name__)

_client: OpenAI | None = None


def get_client() -> OpenAI:
    global _client
    if _client is None:
        _client = OpenAI(api_key=config.OPENAI_API_KEY)
    return _client


RATE_LIMIT_RETRIES = 3
RATE_LIMIT_BACKOFF = 2.0  # seconds, doubled per retry


def _retry_after(exc: RateLimitError, fallback: float) -> float:
    header = exc.response.headers.get("retry-after") if exc.response is not None else None
    try:
        return min(float(header), 30.0) if header else fallback
    except ValueError:
        return fallback


def chat(
    system: str,
    user: str | list[dict],
    model: str | None = None,
    temperature: float = 0.3,
    max_tokens: int = 4096,
) -> str:
    """One-shot completion for short screening prompts.

    `user` may be plain text or a list of content parts (text plus images).
    A 429 is retried a few times, honouring Retry-After when the API sends it;
    every other APIError propagates to the caller.
    """
    messages = [{"role": "system", "content": system}, {"role": "user", "content": user}]
    attempt = 0
    while True:
        try:
            resp = get_client().chat.completions.create(
                model=model or config.OPENAI_MODEL,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
            return resp.choices[0].message.content or ""
        except RateLimitError as e:
            if attempt == RATE_LIMIT_RETRIES:
                raise
            delay = _retry_after(e, RATE_LIMIT_BACKOFF * 2 ** attempt)
            attempt += 1
            log.warning("Rate limited by %s, retry %d/%d in %.1fs",
                        model or config.OPENAI_MODEL, attempt, RATE_LIMIT_RETRIES, delay)
            time.sleep(delay)


def image_parts(images: list[Image] | tuple[Image, ...]) -> list[dict]:
    """OpenAI vision content parts for inline images."""
    parts = []
    for img in images:
        encoded = base64.b64encode(img.data).decode("ascii")
        parts.append({
            "type": "image_url",
            "image_url": {"url": f"data:{img.media_type};base64,{encoded}"},
        })
    return parts


# ── Agentic turns ─────────────────────────────────────────────────────

@dataclass
class AgentContext:
    """Conversation state carried across the turns of one attempt."""
    model: str
    system: str
    tools: list[dict]
    messages: list[dict] = field(default_factory=list)

    def add_user(self, content: str | list[dict]) -> None:
        self.messages.append({"role": "user", "content": content})

    def add_assistant(self, turn: TurnResult) -> None:
        message: dict[str, Any] = {"role": "assistant", "content": turn.text or None}
        if turn.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in turn.tool_calls
            ]
        self.messages.append(message)

    def add_tool_result(self, call_id: str, output: str) -> None:
        self.messages.append({"role": "tool", "tool_call_id": call_id, "content": output})


class OpenAIAgentProvider:
    """Runs one agentic turn against the OpenAI chat completions API."""

    def __init__(self, client: AsyncOpenAI | None = None, max_tokens: int = 16_384):
        self._client = client or AsyncOpenAI(api_key=config.OPENAI_API_KEY, max_retries=0)
        self._max_tokens = max_tokens

    async def run_agentic_turn(self, context: AgentContext) -> TurnResult:
        try:
            resp = await self._client.chat.completions.create(
                model=context.model,
                messages=[{"role": "system", "content": context.system}, *context.messages],
                tools=context.tools,
                max_tokens=self._max_tokens,
            )
        except APIError as e:
            status = getattr(e, "status_code", None)
            log.warning("Agent turn failed: %s%s", type(e).__name__, f" ({status})" if status else "")
            raise TurnTransportError(type(e).__name__) from e

        message = resp.choices[0].message
        calls = []
        for call in message.tool_calls or []:
            try:
                args = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                args = {"_invalid_json": call.function.arguments}
            calls.append(ToolCall(id=call.id, name=call.function.name, arguments=args))
        return TurnResult(text=message.content or "", tool_calls=calls)
