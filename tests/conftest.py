"""Shared pytest fixtures."""

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from config.config_loader import (
    AppConfig,
    DefaultsConfig,
    ExecutionConfig,
    IntervalConfig,
    ModelsConfig,
    NegotiationConfig,
    PromptsConfig,
    SearchConfig,
    SynthesisConfig,
)
from research_council.credentials import CredentialPool
from research_council.executor import Executor
from research_council.models import Citation, GenerationRequest, LLMResponse
from research_council.providers.base import Transport
from research_council.rate_tracker import RateLimitTracker

Responder = Callable[[GenerationRequest, str], object]


class FakeTransport(Transport):
    """Test double transport.

    Each call hands (request, credential) to a responder, or pops the next item
    of a script. An item may be a str (reply text), an LLMResponse, an
    exception instance (raised) or an async callable (awaited).
    """

    def __init__(self, script: list | None = None, responder: Responder | None = None) -> None:
        self._script = list(script or [])
        self._responder = responder
        self.calls: list[tuple[GenerationRequest, str]] = []

    def name(self) -> str:
        return "fake"

    async def send(self, request: GenerationRequest, credential: str) -> LLMResponse:
        self.calls.append((request, credential))
        if self._responder is not None:
            item = self._responder(request, credential)
        elif len(self._script) > 1:
            item = self._script.pop(0)
        elif self._script:
            item = self._script[0]  # last item repeats
        else:
            item = "ok"

        if asyncio.iscoroutine(item):
            item = await item
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, LLMResponse):
            return item
        return LLMResponse(text=str(item), model=request.model, latency_sec=0.01)

    @property
    def operations(self) -> list[str]:
        return [req.operation for req, _ in self.calls]

    @property
    def credentials(self) -> list[str]:
        return [cred for _, cred in self.calls]


@pytest.fixture
def execution_config() -> ExecutionConfig:
    return ExecutionConfig(
        retries_per_credential=2,
        timeout_sec=5,
        server_error_base_delay_sec=0,
        base_delay_sec=0,
        max_jitter_sec=0,
        retry_after_buffer_sec=0,
    )


@pytest.fixture
def interval_config() -> IntervalConfig:
    return IntervalConfig(
        base_delay_sec=10,
        dynamic_adjustment=True,
        mode_multipliers={"deep": 1.2, "balanced": 1.1, "fast": 1.0},
        error_threshold=3,
        error_multiplier=1.5,
        max_delay_sec=20,
        window_sec=300,
        history_size=10,
    )


@pytest.fixture
def negotiation_config() -> NegotiationConfig:
    return NegotiationConfig(
        max_rounds=6,
        turn_retries=2,
        turn_retry_delays_sec=[0, 0],
        temperature=0.7,
        fallback_temperature=0.6,
    )


@pytest.fixture
def synthesis_config() -> SynthesisConfig:
    return SynthesisConfig(section_pause_sec=0, temperature=0.5)


@pytest.fixture
def search_config() -> SearchConfig:
    return SearchConfig(per_domain_limit=2, max_sources=15, ideal_sources=10)


@pytest.fixture
def models_config() -> ModelsConfig:
    return ModelsConfig(
        provider="gemini",
        roles={"outline": "outline-model", "synthesizer": "synth-model", "searcher": "search-model"},
        mode_overrides={"fast": {"outline": "fast-outline-model"}},
    )


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        turn="{persona_name} ({persona}) on {topic}. Context: {context}\n{transcript}\n{instruction}",
        first_turn_instruction="Propose.",
        next_turn_instruction="Refine.",
        fallback="Outline for {topic} from:\n{transcript}",
        section="Topic {topic}. Write:\n{section}\nNotes:\n{notes}\nSources:\n{sources}",
        whole_document="Report on {topic}.\nNotes:\n{notes}\nSources:\n{sources}",
        search="Search: {query}",
        section_search="Section search {query} for {section} in {outline}",
        rewrite="Rewrite:\n{document}\nInstruction: {instruction}",
        personas={"strategist": "Be the big-picture planner.", "implementer": "Be the detail planner."},
    )


@pytest.fixture
def sample_app_config(
    tmp_path: Path,
    execution_config: ExecutionConfig,
    interval_config: IntervalConfig,
    negotiation_config: NegotiationConfig,
    synthesis_config: SynthesisConfig,
    search_config: SearchConfig,
    models_config: ModelsConfig,
    sample_prompts_config: PromptsConfig,
) -> AppConfig:
    interval_config.base_delay_sec = 0
    return AppConfig(
        defaults=DefaultsConfig(mode="balanced", output_dir=tmp_path / "output"),
        models=models_config,
        prompts=sample_prompts_config,
        execution=execution_config,
        interval=interval_config,
        negotiation=negotiation_config,
        synthesis=synthesis_config,
        search=search_config,
        api_key_envs=["TEST_GEMINI_KEYS"],
    )


@pytest.fixture
def two_key_pool() -> CredentialPool:
    return CredentialPool(["key-aaaa1111", "key-bbbb2222"])


@pytest.fixture
def tracker() -> RateLimitTracker:
    return RateLimitTracker()


@pytest.fixture
def make_executor(two_key_pool, tracker, execution_config):
    """Factory: Executor over a FakeTransport, defaulting to the two-key pool."""

    def _make(transport: Transport, pool: CredentialPool | None = None) -> Executor:
        return Executor(pool or two_key_pool, transport, tracker, execution_config)

    return _make


@pytest.fixture
def sample_citations() -> list[Citation]:
    return [
        Citation(url="https://nature.com/articles/test1", title="Advanced Machine Learning Research Methods",
                 authors="Smith, J. & Johnson, A.", year="2023", source="Nature Machine Intelligence"),
        Citation(url="https://ieee.org/papers/test2", title="Deep Learning Applications in Healthcare",
                 authors="Brown, K.", year="2022"),
        Citation(url="https://stanford.edu/research/test4", title="Neural Network Architecture Study"),
    ]
