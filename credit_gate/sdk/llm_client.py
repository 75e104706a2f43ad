"""
Completion client for the AI provider.

Wraps an OpenAI-compatible chat completions endpoint with a bounded timeout
and maps every provider failure onto the gateway's upstream errors, so the
caller can refund and report "please try again".
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import openai
from openai import OpenAI

from ..core.errors import UpstreamInvalidResponse, UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Completion:
    """Text returned by the provider plus its token usage."""
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


class CompletionClient:
    """Single-turn chat completions with bounded timeout and retries."""

    def __init__(
        self,
        model: str,
        timeout: float = 60.0,
        max_retries: int = 1,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
    ):
        """Initialize the client.

        Args:
            model: Model name (required)
            timeout: Seconds before a call is abandoned
            max_retries: Transport-level retries done by the SDK
            base_url: Optional OpenAI-compatible endpoint
            api_key: Optional key; the SDK falls back to OPENAI_API_KEY

        Raises:
            ValueError: If model is missing/empty or timeout is not positive
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if timeout <= 0:
            raise ValueError("timeout must be > 0")

        self.model = model
        self.client = OpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
        )

    def complete(self, system_prompt: str, user_prompt: str, max_tokens: int) -> Completion:
        """Run one completion.

        Raises:
            UpstreamUnavailable: On timeout, transport or API status errors
            UpstreamInvalidResponse: If the provider returned no choices
        """
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=max_tokens,
            )
        except openai.APITimeoutError as e:
            logger.warning("Completion timed out: %s", e)
            raise UpstreamUnavailable("AI generation timed out. Please try again.") from e
        except openai.APIError as e:
            logger.warning("Completion failed: %s", e)
            raise UpstreamUnavailable("AI generation failed. Please try again.") from e

        if not response.choices:
            raise UpstreamInvalidResponse("AI returned an invalid response. Please try again.")

        text = (response.choices[0].message.content or "").strip()
        usage = response.usage
        return Completion(
            text=text,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


def parse_json_response(text: str) -> Any:
    """Parse JSON from a completion, tolerating a Markdown code fence.

    Raises:
        UpstreamInvalidResponse: If the text is not valid JSON
    """
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]

    try:
        return json.loads(cleaned.strip())
    except json.JSONDecodeError as e:
        logger.warning("Completion was not valid JSON: %s", e)
        raise UpstreamInvalidResponse("AI response was invalid. Please try again.") from e
