"""Credential health checks: ping each API key before starting a research run."""

import asyncio
import logging

from research_council.credentials import mask_key
from research_council.models import GenerationRequest
from research_council.providers.base import Transport

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0


async def _check_one(key: str, transport: Transport, model: str) -> tuple[bool, str]:
    """Ping with a single credential. Returns (ok, error_message)."""
    request = GenerationRequest.from_text(model, _PING_PROMPT, operation="healthCheck")
    try:
        response = await asyncio.wait_for(transport.send(request, key), timeout=_TIMEOUT_SEC)
    except TimeoutError:
        return False, f"timed out after {_TIMEOUT_SEC}s"
    except Exception as exc:
        logger.debug("Health check failed for key %s: %s", mask_key(key), exc)
        return False, str(exc)
    if not response.text.strip():
        return False, "empty response"
    return True, ""


async def check_credentials(
    keys: tuple[str, ...] | list[str],
    transport: Transport,
    model: str,
) -> dict[str, tuple[bool, str]]:
    """Ping every credential in parallel, bypassing the retrying executor.

    Returns:
        Dict mapping the full key -> (ok, error_message). Callers mask keys
        when printing them.
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(k, transport, model) for k in keys))
    return dict(zip(keys, results))
