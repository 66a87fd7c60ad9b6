from __future__ import annotations

import json
import re
from typing import Any, Optional, Protocol

from openai import OpenAI

from exam_pipeline.errors import ServiceError
from exam_pipeline.utils.costs import CostTracker
from exam_pipeline.utils.logging_config import get_logger
from exam_pipeline.workflow.utils.settings import PipelineSettings

logger = get_logger(__name__)

# Every family is reached through an OpenAI-compatible chat completions endpoint.
PROVIDER_BASE_URLS = {
    "gpt": None,
    "claude": "https://api.anthropic.com/v1/",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai/",
}

_CODE_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


class GenerationGateway(Protocol):
    def generate(self, system_prompt: str, user_prompt: str) -> str:
        """Return generated text or raise ServiceError."""
        ...


class OpenAIGateway:
    """Synchronous text generation over the OpenAI client.

    If no API key is provided, it falls back to a dummy key and remains inactive;
    calls on an inactive gateway raise ServiceError so callers degrade locally.
    No retries happen here.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        *,
        family: str = "gpt",
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        dummy_key: str = "sk-dummy",
        cost_tracker: Optional[CostTracker] = None,
    ) -> None:
        self.api_key = api_key or dummy_key
        self.model = model
        self.family = family
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.dummy_key = dummy_key
        self.cost_tracker = cost_tracker
        self._client: Optional[OpenAI] = None
        if self.api_key and self.api_key != self.dummy_key:
            self._client = OpenAI(api_key=self.api_key, base_url=base_url, timeout=timeout, max_retries=0)

    @property
    def is_active(self) -> bool:
        return self._client is not None

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        if not self.is_active:
            raise ServiceError(f"{self.family} client is not configured with a valid API key.")

        try:
            response = self._client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            )
        except Exception as exc:
            raise ServiceError(f"{self.family} request failed: {exc}") from exc

        if not response.choices:
            raise ServiceError(f"{self.family} returned no choices")
        content = response.choices[0].message.content or ""
        if not content.strip():
            raise ServiceError(f"{self.family} returned an empty response")

        usage = getattr(response, "usage", None)
        if usage is not None and self.cost_tracker is not None:
            cost = self.cost_tracker.record(
                self.family,
                int(getattr(usage, "prompt_tokens", 0) or 0),
                int(getattr(usage, "completion_tokens", 0) or 0),
            )
            logger.debug("Generation usage | family=%s model=%s cost=%.4f", self.family, self.model, cost)
        return content


def build_gateway(
    settings: PipelineSettings,
    family: str,
    *,
    cost_tracker: Optional[CostTracker] = None,
) -> OpenAIGateway:
    gateway = OpenAIGateway(
        api_key=settings.api_key_for(family),
        model=settings.model_for(family),
        family=family,
        base_url=PROVIDER_BASE_URLS.get(family),
        timeout=settings.api_timeout,
        cost_tracker=cost_tracker,
    )
    if not gateway.is_active:
        logger.warning("Generation client inactive, local fallbacks will be used | family=%s", family)
    return gateway


def extract_json(content: str) -> Any:
    """Parse JSON from a model reply, tolerating code fences and surrounding prose.

    Raises ValueError when nothing parseable is found.
    """
    stripped = _CODE_FENCE.sub("", content.strip())
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass
    for opener, closer in (("{", "}"), ("[", "]")):
        start = stripped.find(opener)
        end = stripped.rfind(closer)
        if start == -1 or end <= start:
            continue
        try:
            return json.loads(stripped[start : end + 1])
        except json.JSONDecodeError:
            continue
    raise ValueError(f"no JSON object found in response: {content[:120]!r}")


__all__ = ["GenerationGateway", "OpenAIGateway", "PROVIDER_BASE_URLS", "build_gateway", "extract_json"]
