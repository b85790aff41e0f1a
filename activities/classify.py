"""
Activity: Classify — decides whether an inbound message is a genuine build
request, whether it is safe to build, and which variant it wants.

Runs before a job exists. A False answer means "no job", not a failure.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Protocol

from openai import OpenAIError

import config
from models.schemas import Image, Variant
from utils.llm import chat, image_parts

log = logging.getLogger(__name__)

TRIGGER_KEYWORDS = ("build", "make", "create")
THREEJS_KEYWORDS = ("3d", "game", "threejs", "three.js", "webgl", "webgpu")
BACKEND_KEYWORDS = (
    "convex", "backend", "database", "real-time", "realtime", "login", "sign in",
    "signup", "sign up", "auth", "users", "accounts", "multiplayer",
)

CLASSIFY_PROMPT = """You are an intent classifier for a bot that builds web apps on request.

Decide whether the message is REQUESTING that an app, website, game or tool be
built, or whether it is praise, commentary, or a question about the bot.

Respond with ONLY "YES" or "NO".

Examples:
- "build me a pomodoro timer" → YES
- "create a weather app with dark mode" → YES
- "you guys build amazing stuff!" → NO
- "can you really build apps?" → NO"""

MODERATE_PROMPT = """You review build requests for a bot that publishes web apps publicly.

Answer "UNSAFE" if the request (text or images) asks for sexual content,
content targeting or harassing real people, hate, violence promotion,
self-harm, malware, phishing or credential harvesting, or scams.
Otherwise answer "SAFE". Respond with ONLY "SAFE" or "UNSAFE"."""


class Classifier(Protocol):
    async def classify(self, text: str, parent_text: str | None = None,
                       images: list[Image] | None = None) -> bool: ...

    async def moderate(self, text: str, parent_text: str | None = None,
                       images: list[Image] | None = None) -> bool: ...


def extract_idea(text: str) -> str:
    """Strip @mentions and trigger verbs from a raw message."""
    idea = re.sub(r"@\w+", "", text)
    idea = re.sub(rf"\b({'|'.join(TRIGGER_KEYWORDS)})\b", "", idea, flags=re.IGNORECASE)
    return re.sub(r"\s+", " ", idea).strip()


def detect_variant(text: str) -> Variant:
    """Pick a variant from keywords; 3D wins over backend."""
    lowered = text.lower()
    if any(re.search(rf"\b{re.escape(kw)}s?\b", lowered) for kw in THREEJS_KEYWORDS):
        return Variant.STATIC_3D
    if any(re.search(rf"\b{re.escape(kw)}s?\b", lowered) for kw in BACKEND_KEYWORDS):
        return Variant.REALTIME_BACKEND
    return Variant.STATIC


def _user_content(label: str, text: str, parent_text: str | None,
                  images: list[Image] | None) -> str | list[dict]:
    parts = []
    if parent_text:
        parts.append(f'Parent message: "{parent_text}"')
    parts.append(f'{label}: "{text}"')
    body = "\n".join(parts)
    if not images:
        return body
    return [{"type": "text", "text": body}, *image_parts(images)]


class LLMClassifier:
    """Classification and moderation via a small OpenAI model."""

    def __init__(self, model: str | None = None):
        self.model = model or config.CLASSIFIER_MODEL

    async def _ask(self, system: str, content: str | list[dict]) -> str:
        loop = asyncio.get_running_loop()
        answer = await loop.run_in_executor(
            None, lambda: chat(system, content, model=self.model, temperature=0, max_tokens=8),
        )
        return answer.strip().upper()

    async def classify(self, text: str, parent_text: str | None = None,
                       images: list[Image] | None = None) -> bool:
        try:
            answer = await self._ask(CLASSIFY_PROMPT, _user_content("Message", text, parent_text, images))
        except OpenAIError as e:
            # Missing a real request is worse than building a stray one
            log.error("Classification failed (%s); defaulting to YES", type(e).__name__)
            return True
        log.info("Classification result: %s", answer)
        return answer.startswith("YES")

    async def moderate(self, text: str, parent_text: str | None = None,
                       images: list[Image] | None = None) -> bool:
        try:
            answer = await self._ask(MODERATE_PROMPT, _user_content("Request", text, parent_text, images))
        except OpenAIError as e:
            log.error("Moderation failed (%s); treating as unsafe", type(e).__name__)
            return False
        log.info("Moderation result: %s", answer)
        return answer.startswith("SAFE")


async def screen(classifier: Classifier, text: str, parent_text: str | None = None,
                 images: list[Image] | None = None) -> bool:
    """Classification then moderation; both must pass for a job to be created."""
    if not await classifier.classify(text, parent_text, images):
        log.info("Not a build request, skipping")
        return False
    if not await classifier.moderate(text, parent_text, images):
        log.info("Content moderation rejected the request")
        return False
    return True
