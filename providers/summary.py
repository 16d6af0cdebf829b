"""
Text-generation provider used to describe a cluster's shared problem.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from config.settings import settings
from providers.base import ProviderError

logger = logging.getLogger(__name__)

SUMMARY_PROMPT = """Analyze these user complaints and create a brief 1-2 sentence summary describing the core problem or pain point they share. Focus on what users are struggling with or frustrated about.

Complaints:
{complaints}

Write only the problem summary, no introduction or explanation:"""


def build_summary_prompt(texts: List[str]) -> str:
    lines = [f'{i}. "{text}"' for i, text in enumerate(texts, 1)]
    return SUMMARY_PROMPT.format(complaints="\n".join(lines))


class SummaryProvider(ABC):
    name: str = "summary"

    @abstractmethod
    def summarize(self, texts: List[str]) -> str:
        raise NotImplementedError


class AnthropicSummaryProvider(SummaryProvider):
    name = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        client=None,
    ):
        self.model = model or settings.SUMMARY_MODEL
        self.max_tokens = max_tokens or settings.SUMMARY_MAX_TOKENS
        if client is None:
            from anthropic import Anthropic

            api_key = api_key or settings.ANTHROPIC_API_KEY
            if not api_key:
                raise ProviderError("ANTHROPIC_API_KEY is required for summary generation")
            client = Anthropic(api_key=api_key)
        self.client = client

    def summarize(self, texts: List[str]) -> str:
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": build_summary_prompt(texts)}],
            )
        except Exception as e:
            raise ProviderError(f"Anthropic request failed: {e}") from e

        for block in getattr(response, "content", None) or []:
            if getattr(block, "type", None) == "text":
                text = (getattr(block, "text", "") or "").strip()
                if text:
                    return text
        raise ProviderError("No text content in summary response")
