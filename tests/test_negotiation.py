"""Tests for research_council/negotiation.py."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from config.config_loader import NegotiationConfig
from research_council.errors import AllCredentialsExhausted, CancelledByUser, NoUsableOutput, TransientError
from research_council.models import (
    ErrorKind,
    LLMResponse,
    NegotiationState,
    Parsed,
    Persona,
    TurnAction,
    Unparseable,
)
from research_council.negotiation import (
    TURN_SCHEMA,
    extract_json_object,
    format_transcript,
    parse_turn,
    run_negotiation,
)
from tests.conftest import FakeTransport

FINAL_OUTLINE = "# Introduction\n- scope\n## Methods\n- approach\n# Conclusion"


def _continue(thought: str) -> str:
    return json.dumps({"thought": thought, "action": "continue_debate", "outline_section": "More"})


def _finalize(thought: str, outline: str = FINAL_OUTLINE) -> str:
    return json.dumps({"thought": thought, "action": "finalize_outline", "final_outline": outline})


def _prompt(request) -> str:
    return request.parts[0].text


@pytest.fixture
def negotiate(make_executor, negotiation_config, sample_prompts_config, models_config):
    """Run a negotiation over the given transport with test configs."""

    async def _run(transport, **kwargs):
        kwargs.setdefault("mode", "balanced")
        return await run_negotiation(
            "Sleep and memory",
            kwargs.pop("context", ""),
            kwargs.pop("mode"),
            make_executor(transport),
            negotiation_config,
            sample_prompts_config,
            models_config,
            **kwargs,
        )

    return _run


# --- parse_turn ---

def test_parse_turn_valid_continue():
    result = parse_turn(_continue("Start with scope"), Persona.STRATEGIST)
    assert isinstance(result, Parsed)
    assert result.turn.persona is Persona.STRATEGIST
    assert result.turn.action is TurnAction.CONTINUE
    assert result.turn.thought == "Start with scope"
    assert result.turn.final_outline is None


def test_parse_turn_valid_finalize():
    result = parse_turn(_finalize("Ready"), Persona.IMPLEMENTER)
    assert isinstance(result, Parsed)
    assert result.turn.action is TurnAction.FINALIZE
    assert result.turn.final_outline == FINAL_OUTLINE


def test_parse_turn_accepts_fenced_json():
    text = f"Here you go:\n```json\n{_continue('Fenced')}\n```"
    result = parse_turn(text, Persona.STRATEGIST)
    assert isinstance(result, Parsed)
    assert result.turn.thought == "Fenced"


def test_parse_turn_rejects_prose():
    result = parse_turn("I think we should start with the introduction.", Persona.STRATEGIST)
    assert isinstance(result, Unparseable)
    assert result.reason == "no JSON object found"


def test_parse_turn_rejects_missing_thought():
    result = parse_turn(json.dumps({"action": "continue_debate"}), Persona.STRATEGIST)
    assert isinstance(result, Unparseable)
    assert "thought" in result.reason


def test_parse_turn_rejects_unknown_action():
    result = parse_turn(json.dumps({"thought": "x", "action": "argue"}), Persona.STRATEGIST)
    assert isinstance(result, Unparseable)
    assert "argue" in result.reason


def test_parse_turn_blank_final_outline_becomes_none():
    text = json.dumps({"thought": "x", "action": "finalize_outline", "final_outline": "   "})
    result = parse_turn(text, Persona.IMPLEMENTER)
    assert isinstance(result, Parsed)
    assert result.turn.final_outline is None


def test_extract_json_object_rejects_arrays():
    assert extract_json_object("[1, 2, 3]") is None


def test_turn_schema_requires_thought_and_action():
    assert TURN_SCHEMA["required"] == ["thought", "action"]


def test_format_transcript_labels_personas():
    turns = [
        parse_turn(_continue("A"), Persona.STRATEGIST).turn,
        parse_turn(_continue("B"), Persona.IMPLEMENTER).turn,
    ]
    assert format_transcript(turns) == "Strategist: A\nImplementer: B"


# --- run_negotiation ---

async def test_finalize_on_implementers_second_turn(negotiate):
    transport = FakeTransport([
        _continue("S1"),
        _continue("I1"),
        _continue("S2"),
        _finalize("I2 ready"),
    ])
    seen = []
    result = await negotiate(transport, on_turn=seen.append)

    assert result.state is NegotiationState.FINALIZED
    assert result.outline == FINAL_OUTLINE
    assert result.turns_taken == 4
    assert result.accepted_turns == 4
    assert len(transport.calls) == 4
    assert [t.persona for t in seen] == [
        Persona.STRATEGIST, Persona.IMPLEMENTER, Persona.STRATEGIST, Persona.IMPLEMENTER,
    ]


async def test_turns_alternate_and_carry_transcript(negotiate):
    transport = FakeTransport([_continue("S1"), _finalize("done")])
    await negotiate(transport, context="Focus on adults")

    first, second = (_prompt(req) for req, _ in transport.calls)
    assert first.startswith("Strategist")
    assert "Propose." in first
    assert "Focus on adults" in first
    assert second.startswith("Implementer")
    assert "Strategist: S1" in second
    assert "Refine." in second


async def test_turn_requests_use_schema_and_outline_model(negotiate):
    transport = FakeTransport([_finalize("done")])
    await negotiate(transport)
    request = transport.calls[0][0]
    assert request.response_schema is TURN_SCHEMA
    assert request.model == "outline-model"
    assert request.operation == "outlineTurn"


async def test_mode_override_selects_outline_model(negotiate):
    transport = FakeTransport([_finalize("done")])
    await negotiate(transport, mode="fast")
    assert transport.calls[0][0].model == "fast-outline-model"


async def test_unparseable_reply_is_retried_in_place(negotiate):
    transport = FakeTransport(["not json at all", _finalize("second try works")])
    result = await negotiate(transport)
    assert result.state is NegotiationState.FINALIZED
    assert result.turns_taken == 1
    assert all(_prompt(req).startswith("Strategist") for req, _ in transport.calls)


async def test_skipped_turn_passes_to_other_persona(negotiate):
    transport = FakeTransport(["garbage", "garbage", _finalize("implementer rescues")])
    seen = []
    result = await negotiate(transport, on_turn=seen.append)

    assert result.state is NegotiationState.FINALIZED
    assert result.turns_taken == 2
    assert result.accepted_turns == 1
    assert [t.persona for t in seen] == [Persona.IMPLEMENTER]
    assert _prompt(transport.calls[2][0]).startswith("Implementer")


async def test_finalize_without_outline_continues(negotiate):
    transport = FakeTransport([
        json.dumps({"thought": "done?", "action": "finalize_outline"}),
        _finalize("really done"),
    ])
    result = await negotiate(transport)
    assert result.state is NegotiationState.FINALIZED
    assert result.turns_taken == 2


async def test_garbage_every_round_falls_back(negotiate, negotiation_config):
    rounds = 3

    def responder(request, credential):
        if request.operation == "outlineFallback":
            return "# Fallback Outline\n- everything"
        return "garbage"

    transport = FakeTransport(responder=responder)
    seen = []
    result = await negotiate(transport, max_rounds=rounds, on_turn=seen.append)

    assert result.state is NegotiationState.EXHAUSTED
    assert result.outline == "# Fallback Outline\n- everything"
    assert result.turns_taken == rounds
    assert result.accepted_turns == 0
    assert seen == []
    assert len(transport.calls) == negotiation_config.turn_retries * rounds + 1
    assert transport.operations[-1] == "outlineFallback"


async def test_fallback_receives_accepted_turns(negotiate):
    def responder(request, credential):
        if request.operation == "outlineFallback":
            return "# Outline"
        return _continue("keep going")

    transport = FakeTransport(responder=responder)
    result = await negotiate(transport, max_rounds=2)

    assert result.state is NegotiationState.EXHAUSTED
    assert result.accepted_turns == 2
    fallback_prompt = _prompt(transport.calls[-1][0])
    assert "Strategist: keep going" in fallback_prompt
    assert "Implementer: keep going" in fallback_prompt


async def test_empty_fallback_raises_no_usable_output(
    negotiation_config, sample_prompts_config, models_config
):
    executor = AsyncMock()
    executor.execute.side_effect = [
        LLMResponse(text=_continue("only turn"), model="m"),
        LLMResponse(text="   ", model="m"),
    ]
    with pytest.raises(NoUsableOutput) as info:
        await run_negotiation(
            "Topic", "", "balanced", executor, negotiation_config,
            sample_prompts_config, models_config, max_rounds=1,
        )
    assert info.value.stage == "outline"


async def test_exhausted_credentials_propagate(negotiate):
    transport = FakeTransport([TransientError(ErrorKind.SERVER_ERROR, "down", status=500)])
    with pytest.raises(AllCredentialsExhausted):
        await negotiate(transport)


async def test_cancel_before_first_turn(negotiate):
    cancel = asyncio.Event()
    cancel.set()
    transport = FakeTransport([_finalize("never")])
    with pytest.raises(CancelledByUser):
        await negotiate(transport, cancel=cancel)
    assert transport.calls == []


async def test_cancel_from_observer_stops_before_next_turn(negotiate):
    cancel = asyncio.Event()
    transport = FakeTransport([_continue("S1"), _finalize("never reached")])
    with pytest.raises(CancelledByUser):
        await negotiate(transport, cancel=cancel, on_turn=lambda turn: cancel.set())
    assert len(transport.calls) == 1


@pytest.fixture
def recorded_delays(monkeypatch):
    delays: list[float] = []

    async def fake_sleep(delay, cancel, where):
        delays.append(delay)

    monkeypatch.setattr("research_council.negotiation.interruptible_sleep", fake_sleep)
    return delays


async def _negotiate_with(config, transport, make_executor, prompts, models):
    return await run_negotiation(
        "Sleep and memory", "", "balanced", make_executor(transport), config, prompts, models
    )


async def test_turn_retries_wait_three_then_six_seconds(
    recorded_delays, make_executor, sample_prompts_config, models_config
):
    config = NegotiationConfig(max_rounds=6, turn_retries=3, turn_retry_delays_sec=[3.0, 6.0])
    transport = FakeTransport(["garbage", "garbage", _finalize("third attempt")])
    result = await _negotiate_with(config, transport, make_executor, sample_prompts_config, models_config)

    assert result.state is NegotiationState.FINALIZED
    assert recorded_delays == [3.0, 6.0]


async def test_default_two_attempts_wait_once(
    recorded_delays, make_executor, sample_prompts_config, models_config
):
    config = NegotiationConfig(max_rounds=6, turn_retry_delays_sec=[3.0, 6.0])
    transport = FakeTransport(["garbage", _finalize("second attempt")])
    await _negotiate_with(config, transport, make_executor, sample_prompts_config, models_config)

    assert recorded_delays == [3.0]


async def test_no_wait_after_last_attempt(
    recorded_delays, make_executor, sample_prompts_config, models_config
):
    config = NegotiationConfig(max_rounds=6, turn_retry_delays_sec=[3.0, 6.0])
    transport = FakeTransport(["garbage", "garbage", _finalize("implementer")])
    await _negotiate_with(config, transport, make_executor, sample_prompts_config, models_config)

    # strategist waits once between its two attempts, then the implementer succeeds at once
    assert recorded_delays == [3.0]
