"""Prompt enhancement via an instruction-tuned text model on Replicate.

Enhancement is best effort: every failure, and any result that would break the
prompt length limit, falls back to the original prompt.
"""

import asyncio
from typing import Any, Callable, Optional

import replicate
import structlog
from replicate.exceptions import ReplicateError as ReplicateAPIError

from clipforge.models.video import PROMPT_MAX_LENGTH, VideoStyle
from clipforge.services.exceptions import (
    PermanentError,
    ProviderAuthError,
    ProviderNetworkError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ServiceError,
)

logger = structlog.get_logger()

SYSTEM_PROMPT = (
    "You rewrite short video ideas into a single vivid text-to-video prompt. "
    "Describe subject, motion, camera and lighting. Answer with the prompt only, "
    "under 900 characters."
)


def classify_error(exception: Exception) -> ServiceError:
    """Classify a Replicate SDK or network exception.

    Classification rules:
        - Timeout errors → ProviderTimeoutError
        - 429 (rate limit), 503 (service unavailable) → ProviderUnavailableError
        - 401/403 (authentication) → ProviderAuthError
        - Connection errors → ProviderNetworkError
        - Anything else → PermanentError
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()

    if "timeout" in error_message_lower:
        return ProviderTimeoutError(f"Network timeout: {error_message}")

    if "429" in error_message or "rate limit" in error_message_lower:
        return ProviderUnavailableError(f"Rate limit exceeded: {error_message}")

    if "503" in error_message or "service unavailable" in error_message_lower:
        return ProviderUnavailableError(f"Service unavailable: {error_message}")

    if (
        "401" in error_message
        or "403" in error_message
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return ProviderAuthError(f"Authentication failed: {error_message}")

    if isinstance(exception, (ConnectionError, OSError)):
        return ProviderNetworkError(f"Connection error: {error_message}")

    return PermanentError(f"Permanent error: {error_message}")


def _output_text(output: Any) -> str:
    # Language models on Replicate stream tokens; run() returns them as a list
    if isinstance(output, str):
        return output
    if isinstance(output, (list, tuple)):
        return "".join(str(part) for part in output)
    return "".join(str(part) for part in output) if output is not None else ""


class PromptEnhancer:
    """Rewrites prompts with a language model, falling back to the original."""

    def __init__(
        self,
        api_token: str,
        model: str = "meta/meta-llama-3-8b-instruct",
        run: Optional[Callable[..., Any]] = None,
    ):
        self.api_token = api_token
        self.model = model
        self._run = run or replicate.Client(api_token=api_token).run

    async def _generate(self, prompt: str, style: Optional[VideoStyle]) -> str:
        instruction = prompt.strip()
        if style is not None:
            instruction = f"{instruction}\nStyle: {style.value}"

        try:
            output = await asyncio.to_thread(
                self._run,
                self.model,
                input={
                    "prompt": instruction,
                    "system_prompt": SYSTEM_PROMPT,
                    "max_new_tokens": 300,
                    "temperature": 0.7,
                },
            )
        except (ReplicateAPIError, ConnectionError, OSError, TimeoutError) as e:
            raise classify_error(e) from e

        return _output_text(output).strip().strip('"').strip()

    async def enhance(self, prompt: str, style: Optional[VideoStyle] = None) -> str:
        """Return an enhanced prompt, or ``prompt`` unchanged on any failure."""
        if not self.api_token:
            return prompt

        try:
            enhanced = await self._generate(prompt, style)
        except Exception as e:
            logger.warning(
                "prompt.enhancement_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return prompt

        if not enhanced or len(enhanced) > PROMPT_MAX_LENGTH:
            logger.info("prompt.enhancement_discarded", length=len(enhanced))
            return prompt

        logger.info("prompt.enhanced", original_length=len(prompt), enhanced_length=len(enhanced))
        return enhanced
