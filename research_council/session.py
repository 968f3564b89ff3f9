"""Per-session ownership of the credential pool, citation registry, tracker and executor."""

import asyncio
import logging
import time
from collections.abc import Callable

from config.config_loader import AppConfig, ModelsConfig
from research_council.citations import CitationRegistry
from research_council.credentials import CredentialPool
from research_council.executor import Executor, interruptible_sleep
from research_council.models import DebateTurn, Finding, NegotiationResult, ResearchReport
from research_council.negotiation import run_negotiation
from research_council.providers.base import Transport
from research_council.providers.gemini import GeminiTransport
from research_council.providers.openai_compat import OpenAICompatTransport
from research_council.rate_tracker import RateLimitTracker
from research_council.search import run_search
from research_council.synthesis import rewrite_report, run_synthesis

logger = logging.getLogger(__name__)

TRANSPORT_CLASSES: dict[str, type[Transport]] = {
    "gemini": GeminiTransport,
    "openai_compat": OpenAICompatTransport,
}


def build_transport(models: ModelsConfig) -> Transport:
    if models.provider not in TRANSPORT_CLASSES:
        raise ValueError(
            f"Unknown provider '{models.provider}'. Choose one of: {', '.join(TRANSPORT_CLASSES)}"
        )
    if models.provider == "openai_compat" and not models.base_url:
        raise ValueError("models.base_url is required for the openai_compat provider")
    return TRANSPORT_CLASSES[models.provider](base_url=models.base_url)


class ResearchSession:
    """One independent research run.

    Nothing here is module-level state: two sessions in one process never share
    citation numbering, credential rotation or rate-limit history.
    """

    def __init__(
        self,
        config: AppConfig,
        pool: CredentialPool,
        transport: Transport,
        mode: str | None = None,
        cancel: asyncio.Event | None = None,
        tracker: RateLimitTracker | None = None,
    ) -> None:
        self.config = config
        self.mode = mode or config.defaults.mode
        self.cancel = cancel if cancel is not None else asyncio.Event()
        self.pool = pool
        self.registry = CitationRegistry()
        self.tracker = tracker or RateLimitTracker.from_config(config.interval)
        self.executor = Executor(pool, transport, self.tracker, config.execution)
        self.findings: list[Finding] = []

    @classmethod
    def from_config(cls, config: AppConfig, mode: str | None = None) -> "ResearchSession":
        pool = CredentialPool.from_env(config.api_key_envs)
        return cls(config, pool, build_transport(config.models), mode=mode)

    def reset(self) -> None:
        """Forget citations and findings so the session can start an unrelated report."""
        self.registry.clear()
        self.findings.clear()

    def notes(self) -> str:
        return "\n\n---\n\n".join(f.text for f in self.findings)

    async def pace(self) -> None:
        """Wait the tracker's suggested delay before the next logical request."""
        delay = self.tracker.suggested_delay(self.mode, self.config.interval)
        logger.info("Pacing %.1fs before next request (%s mode)", delay, self.mode)
        await interruptible_sleep(delay, self.cancel, "research")

    async def search(
        self,
        query: str,
        outline: str | None = None,
        section: str | None = None,
    ) -> Finding:
        finding = await run_search(
            query,
            self.executor,
            self.registry,
            self.config.search,
            self.config.prompts,
            self.config.models,
            self.mode,
            cancel=self.cancel,
            outline=outline,
            section=section,
        )
        self.findings.append(finding)
        return finding

    async def negotiate(
        self,
        topic: str,
        context: str = "",
        on_turn: Callable[[DebateTurn], None] | None = None,
        max_rounds: int | None = None,
    ) -> NegotiationResult:
        return await run_negotiation(
            topic,
            context,
            self.mode,
            self.executor,
            self.config.negotiation,
            self.config.prompts,
            self.config.models,
            cancel=self.cancel,
            on_turn=on_turn,
            max_rounds=max_rounds,
        )

    async def synthesize(self, topic: str, outline: str | None) -> str:
        return await run_synthesis(
            topic,
            outline,
            self.notes(),
            self.registry,
            self.mode,
            self.executor,
            self.config.synthesis,
            self.config.prompts,
            self.config.models,
            cancel=self.cancel,
        )

    async def rewrite(self, document: str, instruction: str) -> str:
        return await rewrite_report(
            document,
            instruction,
            self.mode,
            self.executor,
            self.config.synthesis,
            self.config.prompts,
            self.config.models,
            cancel=self.cancel,
        )

    async def run(
        self,
        topic: str,
        queries: list[str] | None = None,
        context: str = "",
        with_outline: bool = True,
        outline: str | None = None,
        on_turn: Callable[[DebateTurn], None] | None = None,
        max_rounds: int | None = None,
    ) -> ResearchReport:
        """Full pipeline: optional outline debate, searches, then synthesis.

        A supplied outline skips the debate.
        """
        start = time.monotonic()

        if outline is None and with_outline:
            result = await self.negotiate(topic, context, on_turn=on_turn, max_rounds=max_rounds)
            outline = result.outline
            await self.pace()

        for query in queries or []:
            await self.search(query, outline=outline)
            await self.pace()

        document = await self.synthesize(topic, outline)

        return ResearchReport(
            topic=topic,
            mode=self.mode,
            outline=outline,
            document=document,
            citations=self.registry.get_all(),
            duration_sec=time.monotonic() - start,
        )
