"""OpenAI-compatible transport using openai SDK (chat completions against base_url)."""

import logging
import time

import openai
from openai import AsyncOpenAI

from research_council.errors import TransientError
from research_council.models import ErrorKind, GenerationRequest, LLMResponse
from research_council.providers.base import Transport

logger = logging.getLogger(__name__)


def _retry_after(exc: openai.APIStatusError) -> float | None:
    value = exc.response.headers.get("retry-after") if exc.response is not None else None
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def classify_openai_error(exc: openai.OpenAIError) -> TransientError:
    """Map an openai SDK exception onto the error taxonomy."""
    if isinstance(exc, openai.RateLimitError):
        return TransientError(
            ErrorKind.RATE_LIMITED, str(exc), retry_after=_retry_after(exc), status=exc.status_code
        )
    if isinstance(exc, openai.APIStatusError):
        kind = ErrorKind.SERVER_ERROR if exc.status_code >= 500 else ErrorKind.REQUEST_REJECTED
        return TransientError(kind, str(exc), status=exc.status_code)
    if isinstance(exc, openai.APITimeoutError):
        return TransientError(ErrorKind.TIMEOUT, str(exc))
    if isinstance(exc, openai.APIResponseValidationError):
        return TransientError(ErrorKind.MALFORMED_RESPONSE, str(exc))
    return TransientError(ErrorKind.NETWORK_ERROR, str(exc))


def _build_messages(request: GenerationRequest) -> list[dict]:
    content: list[dict] = []
    for part in request.parts:
        if part.data and part.mime_type:
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:{part.mime_type};base64,{part.data}"},
            })
        elif part.text:
            content.append({"type": "text", "text": part.text})
    return [{"role": "user", "content": content}]


class OpenAICompatTransport(Transport):
    """Any OpenAI-compatible endpoint. Grounding tools are not supported."""

    def __init__(self, base_url: str | None = None) -> None:
        self._base_url = base_url
        self._clients: dict[str, AsyncOpenAI] = {}

    def name(self) -> str:
        return "openai_compat"

    def _client_for(self, credential: str) -> AsyncOpenAI:
        client = self._clients.get(credential)
        if client is None:
            # The executor owns retries; the SDK must not retry on its own.
            client = AsyncOpenAI(api_key=credential, base_url=self._base_url, max_retries=0)
            self._clients[credential] = client
        return client

    async def send(self, request: GenerationRequest, credential: str) -> LLMResponse:
        client = self._client_for(credential)
        kwargs: dict = {"model": request.model, "messages": _build_messages(request)}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.response_schema is not None:
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "response", "schema": request.response_schema},
            }
        if request.tools:
            logger.debug("Ignoring unsupported tools %s for %s", request.tools, request.model)

        start = time.monotonic()
        try:
            response = await client.chat.completions.create(**kwargs)
        except openai.OpenAIError as exc:
            raise classify_openai_error(exc) from exc
        except Exception as exc:
            raise TransientError(ErrorKind.NETWORK_ERROR, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        choice = response.choices[0] if response.choices else None
        text = choice.message.content if choice and choice.message else None

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.total_tokens

        logger.debug("OpenAI-compatible %s: %.2fs, %s tokens", request.model, latency, token_count)

        return LLMResponse(
            text=text or "",
            model=request.model,
            latency_sec=latency,
            token_count=token_count,
        )
