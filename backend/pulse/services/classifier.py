"""
Text classifier client (OpenAI chat completions) with a bounded retry envelope.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from openai import AsyncOpenAI, OpenAIError

from pulse.config import Settings, settings as default_settings
from pulse.errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a political analyst reviewing public reaction on social media. "
    "Answer with a single valid JSON object in the exact format requested. "
    "Do not add explanations, disclaimers or markdown."
)

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class TextClassifier(Protocol):
    model_name: str

    async def complete(self, prompt: str, *, system: Optional[str] = None) -> str:
        ...


def _get_openai_client(api_key: str):
    """Get OpenAI client only when needed and API key is available."""
    if not api_key:
        return None
    return AsyncOpenAI(api_key=api_key)


class OpenAIClassifier:
    """Sends one bounded prompt and returns the raw completion text."""

    def __init__(self, config: Settings | None = None, client: Any = None) -> None:
        self.config = config or default_settings
        self._client = client

    @property
    def model_name(self) -> str:
        return self.config.CLASSIFIER_MODEL

    async def complete(self, prompt: str, *, system: Optional[str] = None) -> str:
        """
        Run one chat completion.

        Args:
            prompt: User prompt, already bounded by the caller
            system: Optional system prompt (defaults to SYSTEM_PROMPT)

        Returns:
            Completion text, expected to embed a JSON object

        Raises:
            UpstreamError: Client missing, API failure or empty completion
        """
        if self._client is None:
            self._client = _get_openai_client(self.config.OPENAI_API_KEY)
        if self._client is None:
            raise UpstreamError("Classifier is not configured (OPENAI_API_KEY missing)")

        try:
            response = await self._client.chat.completions.create(
                model=self.model_name,
                messages=[
                    {"role": "system", "content": system or SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self.config.CLASSIFIER_TEMPERATURE,
                max_tokens=self.config.CLASSIFIER_MAX_TOKENS,
            )
        except OpenAIError as e:
            raise UpstreamError(f"Classifier call failed: {type(e).__name__}: {e}") from e

        content = (response.choices[0].message.content or "").strip()
        if not content:
            raise UpstreamError("Classifier returned an empty completion")
        return content


async def call_with_retry(
    classifier: TextClassifier,
    prompt: str,
    *,
    system: Optional[str] = None,
    attempts: int = 3,
    backoff_seconds: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Optional[str]:
    """
    Call the classifier, retrying upstream failures with linear backoff.

    Waits backoff_seconds * attempt between attempts.

    Returns:
        Completion text, or None once every attempt has failed
    """
    for attempt in range(1, attempts + 1):
        try:
            return await classifier.complete(prompt, system=system)
        except UpstreamError as e:
            logger.warning("Classifier attempt %d/%d failed: %s", attempt, attempts, e)
            if attempt == attempts:
                break
            await sleep(backoff_seconds * attempt)

    logger.error("Classifier unavailable after %d attempts", attempts)
    return None


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Locate and parse the JSON object embedded in a completion.

    Tolerates code fences and prose around the object.

    Raises:
        ValidationError: No parseable JSON object was found
    """
    cleaned = _FENCE_RE.sub("", text or "").replace("```", "").strip()
    candidates = [cleaned]
    match = _OBJECT_RE.search(cleaned)
    if match and match.group(0) != cleaned:
        candidates.append(match.group(0))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    raise ValidationError(f"No JSON object in classifier output: {cleaned[:120]!r}")


__all__ = [
    "OpenAIClassifier",
    "SYSTEM_PROMPT",
    "TextClassifier",
    "call_with_retry",
    "extract_json_object",
]
