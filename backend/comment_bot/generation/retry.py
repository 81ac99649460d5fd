"""
Retry policy for generation calls.
"""

import asyncio
import logging
from typing import Optional

from ..core.errors import InfrastructureError
from ..core.result import Result
from .base import GenerationClient, GenerationResult

logger = logging.getLogger(__name__)


async def generate_with_retry(
    client: GenerationClient,
    prompt: str,
    model: str,
    session_token: Optional[str] = None,
    max_retries: int = 3,
    base_delay: float = 2.0,
) -> Result[GenerationResult]:
    """
    Call ``client.generate`` up to ``max_retries`` times.

    After failed attempt N the call sleeps ``N * base_delay`` seconds. The
    last failure is returned as an InfrastructureError result.
    """
    attempts = max(1, max_retries)
    last_error: Optional[Exception] = None

    for attempt in range(1, attempts + 1):
        try:
            result = await client.generate(prompt, model, session_token)
            if attempt > 1:
                logger.info(f"Generation succeeded on attempt {attempt}/{attempts}")
            return Result.ok(result)
        except Exception as e:
            last_error = e
            if attempt == attempts:
                break
            delay = attempt * base_delay
            logger.warning(
                f"Generation attempt {attempt}/{attempts} failed, retrying in {delay:.1f}s: {e}",
                extra={"extra_fields": {"model": model, "attempt": attempt}},
            )
            await asyncio.sleep(delay)

    logger.error(
        f"Generation failed after {attempts} attempts: {last_error}",
        extra={"extra_fields": {"model": model, "error": str(last_error)}},
    )
    return Result.fail(InfrastructureError(f"generation: {last_error}"))
