"""Resilient request execution: credential rotation, timeouts, cancellation and backoff."""

import asyncio
import logging
import random
from collections.abc import Callable

from config.config_loader import ExecutionConfig
from research_council.credentials import CredentialPool, mask_key
from research_council.errors import (
    AllCredentialsExhausted,
    CancelledByUser,
    NoCredentialsError,
    TransientError,
)
from research_council.models import ErrorKind, GenerationRequest, LLMResponse
from research_council.providers.base import Transport
from research_council.rate_tracker import RateLimitTracker

logger = logging.getLogger(__name__)


async def interruptible_sleep(delay: float, cancel: asyncio.Event | None, where: str) -> None:
    """Sleep for delay seconds, raising CancelledByUser as soon as cancel fires."""
    if cancel is None:
        if delay > 0:
            await asyncio.sleep(delay)
        return
    if cancel.is_set():
        raise CancelledByUser(where)
    if delay <= 0:
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except TimeoutError:
        return
    raise CancelledByUser(where)


def check_cancelled(cancel: asyncio.Event | None, where: str) -> None:
    if cancel is not None and cancel.is_set():
        raise CancelledByUser(where)


class Executor:
    """Issues one logical request, retrying across the credential pool.

    Attempt budget is pool size x retries_per_credential. Every attempt uses
    the next credential, so a failing key is rotated away from immediately.
    """

    def __init__(
        self,
        pool: CredentialPool,
        transport: Transport,
        tracker: RateLimitTracker,
        config: ExecutionConfig,
        jitter: Callable[[float], float] | None = None,
    ) -> None:
        self._pool = pool
        self._transport = transport
        self._tracker = tracker
        self._config = config
        self._jitter = jitter or (lambda upper: random.uniform(0, upper))

    @property
    def transport(self) -> Transport:
        return self._transport

    def _backoff_delay(self, error: TransientError, attempt: int) -> float:
        """Delay before the next attempt, attempt being 1-indexed."""
        if error.kind is ErrorKind.REQUEST_REJECTED:
            return 0.0
        if error.kind is ErrorKind.RATE_LIMITED and error.retry_after is not None:
            return error.retry_after + self._config.retry_after_buffer_sec

        retries_on_this_key = (attempt - 1) % self._config.retries_per_credential
        base = (
            self._config.server_error_base_delay_sec
            if error.kind is ErrorKind.SERVER_ERROR
            else self._config.base_delay_sec
        )
        return base * (2 ** retries_on_this_key) + self._jitter(self._config.max_jitter_sec)

    async def _attempt(
        self,
        request: GenerationRequest,
        credential: str,
        cancel: asyncio.Event | None,
    ) -> LLMResponse:
        """One attempt: the call races the timeout and the caller's cancel event."""
        call = asyncio.ensure_future(self._transport.send(request, credential))
        waiters: set[asyncio.Future] = {call}
        cancel_wait: asyncio.Future | None = None
        if cancel is not None:
            cancel_wait = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self._config.timeout_sec,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for fut in waiters:
                if not fut.done():
                    fut.cancel()

        if cancel is not None and cancel.is_set():
            raise CancelledByUser(request.operation)
        if call not in done:
            raise TransientError(
                ErrorKind.TIMEOUT, f"Request timed out after {self._config.timeout_sec}s"
            )

        exc = call.exception()
        if exc is not None:
            if isinstance(exc, TransientError):
                raise exc
            raise TransientError(ErrorKind.NETWORK_ERROR, f"Unexpected error: {exc}") from exc

        response = call.result()
        if not response.text or not response.text.strip():
            raise TransientError(ErrorKind.EMPTY_RESPONSE, "Empty response from API")
        return response

    async def execute(
        self,
        request: GenerationRequest,
        cancel: asyncio.Event | None = None,
    ) -> LLMResponse:
        """Run a request to success or to a fatal error.

        Raises:
            NoCredentialsError: the pool is empty.
            CancelledByUser: the cancel event fired; no further attempts are made.
            AllCredentialsExhausted: every attempt in the budget failed.
        """
        if self._pool.size() == 0:
            raise NoCredentialsError()

        max_attempts = self._pool.size() * self._config.retries_per_credential
        summary = request.summary(self._config.log_truncate_chars)
        last_error: TransientError | None = None

        for attempt in range(1, max_attempts + 1):
            check_cancelled(cancel, request.operation)
            credential = self._pool.next()
            logger.info(
                "[API Request] %s %s attempt %d/%d key %s",
                request.operation, request.model, attempt, max_attempts, mask_key(credential),
            )
            logger.debug("[API Request] %s", summary)

            try:
                response = await self._attempt(request, credential, cancel)
            except CancelledByUser:
                logger.info("[API Call Aborted] %s was cancelled by the user", request.operation)
                raise
            except TransientError as exc:
                last_error = exc
                logger.warning(
                    "[API Call Failed: attempt %d/%d] %s key %s: %s",
                    attempt, max_attempts, request.operation, mask_key(credential), exc,
                )
                if exc.kind is ErrorKind.RATE_LIMITED:
                    self._tracker.record_rate_limit_event()
                if attempt < max_attempts:
                    delay = self._backoff_delay(exc, attempt)
                    if delay > 0:
                        logger.info("[API Retry] %s, waiting %.1fs", exc.kind.value, delay)
                    await interruptible_sleep(delay, cancel, request.operation)
                continue

            logger.info(
                "[API Success] %s %s in %.2fs (%s tokens)",
                request.operation, request.model, response.latency_sec, response.token_count,
            )
            return response

        logger.error(
            "[API Error: All Keys Failed] %s after %d attempt(s). Last error: %s",
            request.operation, max_attempts, last_error,
        )
        raise AllCredentialsExhausted(request.operation, max_attempts, last_error)
