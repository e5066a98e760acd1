from __future__ import annotations

import asyncio
import logging
from typing import Any

from studio.generation.variants import GenerationVariant
from studio.providers.replicate_provider import InferenceClient

logger = logging.getLogger(__name__)


class GenerationFailed(Exception):
    """Inference raised, or returned an empty result."""


async def generate_media(client: InferenceClient, variant: GenerationVariant, prompt: str) -> Any:
    """
    Run one generation without blocking the event loop.

    Returns the raw (non-empty) inference output, usually a URL or list of URLs.
    """
    try:
        output = await asyncio.to_thread(client.run, variant.model, variant.build_input(prompt))
    except Exception as e:
        logger.exception("Error generating %s", variant.kind)
        raise GenerationFailed(str(e)) from e

    logger.info("Output object (%s): %r", variant.kind, output)
    if not output:
        logger.error("%s URL not found in the response: %r", variant.kind.capitalize(), output)
        raise GenerationFailed(f"Empty {variant.kind} output")
    return output
