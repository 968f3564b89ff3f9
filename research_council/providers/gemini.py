"""Gemini transport using google-genai SDK with native async."""

import base64
import json
import logging
import re
import time

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from research_council.errors import TransientError
from research_council.models import ErrorKind, GenerationRequest, LLMResponse, Source
from research_council.providers.base import Transport

logger = logging.getLogger(__name__)

_RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"
_SECONDS_RE = re.compile(r"(\d+(?:\.\d+)?)")


def _retry_delay_from_details(details: object) -> float | None:
    """Extract RetryInfo.retryDelay (e.g. "37s") from an API error payload."""
    if isinstance(details, dict):
        details = (details.get("error") or {}).get("details", [])
    if not isinstance(details, list):
        return None
    for item in details:
        if isinstance(item, dict) and item.get("@type") == _RETRY_INFO_TYPE:
            match = _SECONDS_RE.search(str(item.get("retryDelay", "")))
            if match:
                return float(match.group(1))
    return None


def classify_api_error(exc: genai_errors.APIError) -> TransientError:
    """Map a google-genai APIError onto the error taxonomy."""
    code = exc.code or 0
    message = exc.message or str(exc)
    if code == 429:
        return TransientError(
            ErrorKind.RATE_LIMITED,
            message,
            retry_after=_retry_delay_from_details(exc.details),
            status=code,
        )
    if 500 <= code < 600:
        return TransientError(ErrorKind.SERVER_ERROR, message, status=code)
    return TransientError(ErrorKind.REQUEST_REJECTED, message, status=code)


def _build_parts(request: GenerationRequest) -> list[genai_types.Part]:
    parts: list[genai_types.Part] = []
    for part in request.parts:
        if part.data and part.mime_type:
            parts.append(
                genai_types.Part.from_bytes(
                    data=base64.b64decode(part.data), mime_type=part.mime_type
                )
            )
        elif part.text:
            parts.append(genai_types.Part(text=part.text))
    return parts


def _build_config(request: GenerationRequest) -> genai_types.GenerateContentConfig:
    kwargs: dict = {}
    if request.temperature is not None:
        kwargs["temperature"] = request.temperature
    if request.response_schema is not None:
        kwargs["response_mime_type"] = "application/json"
        kwargs["response_schema"] = request.response_schema
    if "google_search" in request.tools:
        kwargs["tools"] = [genai_types.Tool(google_search=genai_types.GoogleSearch())]
    return genai_types.GenerateContentConfig(**kwargs)


def _extract_sources(response: genai_types.GenerateContentResponse) -> list[Source]:
    sources: list[Source] = []
    if not response.candidates:
        return sources
    metadata = response.candidates[0].grounding_metadata
    if not metadata or not metadata.grounding_chunks:
        return sources
    for chunk in metadata.grounding_chunks:
        if chunk.web and chunk.web.uri:
            sources.append(Source(url=chunk.web.uri, title=chunk.web.title or chunk.web.uri))
    return sources


class GeminiTransport(Transport):
    """Google Gemini via google-genai SDK. One client per credential."""

    def __init__(self, base_url: str | None = None) -> None:
        self._base_url = base_url
        self._clients: dict[str, genai.Client] = {}

    def name(self) -> str:
        return "gemini"

    def _client_for(self, credential: str) -> genai.Client:
        client = self._clients.get(credential)
        if client is None:
            http_options = genai_types.HttpOptions(base_url=self._base_url) if self._base_url else None
            client = genai.Client(api_key=credential, http_options=http_options)
            self._clients[credential] = client
        return client

    async def send(self, request: GenerationRequest, credential: str) -> LLMResponse:
        client = self._client_for(credential)
        start = time.monotonic()
        try:
            response = await client.aio.models.generate_content(
                model=request.model,
                contents=[genai_types.Content(role="user", parts=_build_parts(request))],
                config=_build_config(request),
            )
        except genai_errors.APIError as exc:
            raise classify_api_error(exc) from exc
        except json.JSONDecodeError as exc:
            raise TransientError(ErrorKind.MALFORMED_RESPONSE, f"Failed to parse JSON response: {exc}") from exc
        except Exception as exc:
            raise TransientError(ErrorKind.NETWORK_ERROR, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        block_reason = response.prompt_feedback.block_reason if response.prompt_feedback else None
        if block_reason:
            logger.warning("Gemini blocked request for %s: %s", request.model, block_reason)

        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count

        logger.debug("Gemini %s: %.2fs, %s tokens", request.model, latency, token_count)

        return LLMResponse(
            text=response.text or "",
            model=request.model,
            sources=_extract_sources(response),
            latency_sec=latency,
            token_count=token_count,
        )
