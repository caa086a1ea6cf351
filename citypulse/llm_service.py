import asyncio
import logging
import os
import re
from typing import Optional
from dataclasses import dataclass

import httpx

from citypulse.schemas import IssueCategory, IssuePriority

logger = logging.getLogger(__name__)

FALLBACK_CATEGORY = list(IssueCategory)[0]
FALLBACK_PRIORITY = IssuePriority.MEDIUM
FALLBACK_TITLE = "Issue Report"

SUGGESTION_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "10"))


@dataclass
class Suggestion:
    """
    Suggested classification for an issue description.
    """

    category: IssueCategory
    priority: IssuePriority
    title: str


class LLMServiceError(Exception):
    """Custom exception for LLM service errors."""

    pass


class LLMService:
    """Abstract base for LLM services."""

    async def complete(self, prompt: str, temperature: float = 0.1) -> str:
        """
        Return the model's raw text answer to ``prompt``.

        Raises:
            LLMServiceError: If the call fails
        """
        raise NotImplementedError

    async def classify(self, description: str) -> IssueCategory:
        allowed = ", ".join(category.value for category in IssueCategory)
        prompt = f"""Classify this infrastructure issue into exactly one of these categories: {allowed}.

Examples:
"Large pothole on main road, very dangerous for vehicles" -> road
"No water supply for 3 days in our area" -> water
"Street light not working near school" -> streetlight
"Electricity pole leaning dangerously" -> electricity
"Garbage pile blocking drainage" -> drainage
"Overflowing garbage bins on the corner" -> waste

Description: "{description}"

Reply with ONLY the category name."""

        answer = (await self.complete(prompt)).strip().lower()
        for category in IssueCategory:
            if category.value in answer:
                return category
        raise LLMServiceError(f"Unrecognised category answer: {answer!r}")

    async def prioritize(self, description: str) -> IssuePriority:
        prompt = f"""Analyse urgency of this infrastructure issue description and respond with priority level only (low, medium, high, urgent):

Description: "{description[:500]}"

Reply with ONLY the urgency level word."""

        answer = (await self.complete(prompt)).strip().lower()
        match = re.search(r"(low|medium|high|urgent)", answer)
        if not match:
            raise LLMServiceError(f"Unrecognised priority answer: {answer!r}")
        return IssuePriority(match.group(1))

    async def titleize(self, description: str) -> str:
        prompt = f"""Convert this infrastructure issue description into a highly concise, professional title (maximum 80 characters, just the title itself without quotation marks or extra text).

Description: "{description[:300]}"

Title:"""

        answer = (await self.complete(prompt, temperature=0.3)).strip().strip("\"'")
        if not answer:
            raise LLMServiceError("Empty title returned")
        return answer[:100]


class OpenAIService(LLMService):
    """
    Implementation of LLMService using OpenAI API.
    """

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout: float = SUGGESTION_TIMEOUT_SECONDS):
        """
        Initialize OpenAI Service
        """
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.base_url = "https://api.openai.com/v1"

    async def complete(self, prompt: str, temperature: float = 0.1) -> str:
        """Call OpenAI chat completions and return the message text"""

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": self.model,
                        "messages": [
                            {"role": "system", "content": "You classify municipal infrastructure complaints. Answer tersely, no markdown."},
                            {"role": "user", "content": prompt},
                        ],
                        "temperature": temperature,
                        "max_tokens": 60,
                    },
                )
                response.raise_for_status()

                result = response.json()
                logger.debug(f"OpenAI response: {result}")

                if not result.get("choices") or not result["choices"][0].get("message"):
                    logger.error(f"Unexpected OpenAI response structure: {result}")
                    raise LLMServiceError("Invalid response structure from OpenAI")

                content = result["choices"][0]["message"]["content"]
                if not content:
                    raise LLMServiceError("Empty content returned from OpenAI")
                return content

        except httpx.HTTPError as e:
            logger.error(f"OpenAI API request failed: {str(e)}")
            raise LLMServiceError(f"OpenAI API error: {str(e)}")


def get_llm_service() -> Optional[LLMService]:
    """
    Factory function to get configured LLM service.

    Reads configuration from environment variables:
    - LLM_PROVIDER: "openai"
    - OPENAI_API_KEY: API key for OpenAI
    - OPENAI_MODEL: optional model override

    Returns:
        LLMService instance or None if not configured
    """
    provider = os.getenv("LLM_PROVIDER", "").lower().strip()

    if provider == "openai":
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            logger.warning("LLM_PROVIDER=openai but OPENAI_API_KEY not set")
            return None
        logger.info("Using OpenAI LLM service")
        return OpenAIService(api_key, model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"))

    elif provider:
        logger.warning(f"Unknown LLM_PROVIDER: {provider}")
        return None
    else:
        logger.info("LLM_PROVIDER not set, AI suggestions disabled")
        return None


class SuggestionService:
    """
    Never-failing front for an optional LLMService.

    Each suggestion is bounded by ``timeout`` and replaced by its fallback
    value when the model is missing, slow, or returns garbage.
    """

    def __init__(self, llm: Optional[LLMService] = None, timeout: float = SUGGESTION_TIMEOUT_SECONDS):
        self.llm = llm
        self.timeout = timeout

    async def _attempt(self, call, description: str, fallback):
        if self.llm is None:
            return fallback
        try:
            return await asyncio.wait_for(call(description), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"AI suggestion timed out after {self.timeout}s, using fallback")
        except LLMServiceError as e:
            logger.warning(f"AI suggestion failed, using fallback: {str(e)}")
        except Exception:
            logger.exception("Unexpected AI suggestion error, using fallback")
        return fallback

    async def suggest(self, description: str) -> Suggestion:
        category, priority, title = await asyncio.gather(
            self._attempt(self.llm.classify if self.llm else None, description, FALLBACK_CATEGORY),
            self._attempt(self.llm.prioritize if self.llm else None, description, FALLBACK_PRIORITY),
            self._attempt(self.llm.titleize if self.llm else None, description, FALLBACK_TITLE),
        )
        return Suggestion(category=category, priority=priority, title=title)
