"""Two-persona outline negotiation: turn-taking, skip-on-garbage, bounded rounds."""

import asyncio
import json
import logging
import re
import time
from collections.abc import Callable

from config.config_loader import ModelsConfig, NegotiationConfig, PromptsConfig
from research_council.errors import NoUsableOutput
from research_council.executor import Executor, check_cancelled, interruptible_sleep
from research_council.models import (
    DebateTurn,
    GenerationRequest,
    NegotiationResult,
    NegotiationState,
    Parsed,
    Persona,
    TurnAction,
    TurnParse,
    Unparseable,
)

logger = logging.getLogger(__name__)

TURN_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "thought": {
            "type": "string",
            "description": "Your reasoning about the outline structure",
        },
        "action": {
            "type": "string",
            "enum": ["continue_debate", "finalize_outline"],
            "description": "Whether to continue debating or finalize the outline",
        },
        "outline_section": {
            "type": "string",
            "description": "A section or improvement to discuss (only with continue_debate)",
        },
        "final_outline": {
            "type": "string",
            "description": "The complete outline in markdown (only with finalize_outline)",
        },
    },
    "required": ["thought", "action"],
}

_ACTIONS = {
    "continue": TurnAction.CONTINUE,
    "continue_debate": TurnAction.CONTINUE,
    "finalize": TurnAction.FINALIZE,
    "finalize_outline": TurnAction.FINALIZE,
}

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")

_PERSONA_NAMES = {
    Persona.STRATEGIST: "Strategist",
    Persona.IMPLEMENTER: "Implementer",
}


def extract_json_object(text: str) -> dict | None:
    """Pull a JSON object out of a reply that may wrap it in fences or prose."""
    if not text or not text.strip():
        return None
    candidate = text
    fenced = _FENCE_RE.search(text)
    if fenced:
        candidate = fenced.group(1)
    first, last = candidate.find("{"), candidate.rfind("}")
    if first == -1 or last < first:
        return None
    try:
        value = json.loads(candidate[first:last + 1])
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def parse_turn(text: str, persona: Persona) -> TurnParse:
    """Turn a model reply into Parsed(turn) or Unparseable(raw_text, reason)."""
    payload = extract_json_object(text)
    if payload is None:
        return Unparseable(raw_text=text, reason="no JSON object found")

    thought = payload.get("thought")
    if not isinstance(thought, str) or not thought.strip():
        return Unparseable(raw_text=text, reason="missing or empty thought")

    action = _ACTIONS.get(str(payload.get("action", "continue")).strip().lower())
    if action is None:
        return Unparseable(raw_text=text, reason=f"unknown action {payload.get('action')!r}")

    final_outline = payload.get("final_outline")
    if not isinstance(final_outline, str) or not final_outline.strip():
        final_outline = None

    return Parsed(
        turn=DebateTurn(
            persona=persona,
            thought=thought.strip(),
            action=action,
            final_outline=final_outline.strip() if final_outline else None,
            timestamp=time.time(),
        )
    )


def format_transcript(turns: list[DebateTurn]) -> str:
    return "\n".join(f"{_PERSONA_NAMES[t.persona]}: {t.thought}" for t in turns)


def _turn_prompt(
    prompts: PromptsConfig,
    persona: Persona,
    topic: str,
    context: str,
    turns: list[DebateTurn],
) -> str:
    return prompts.turn.format(
        persona_name=_PERSONA_NAMES[persona],
        persona=prompts.personas.get(persona.value, ""),
        topic=topic,
        context=context or "None",
        transcript=format_transcript(turns) or "This is the beginning of the collaboration.",
        instruction=prompts.first_turn_instruction if not turns else prompts.next_turn_instruction,
    )


async def _take_turn(
    persona: Persona,
    prompt: str,
    model: str,
    executor: Executor,
    config: NegotiationConfig,
    cancel: asyncio.Event | None,
    turn_number: int,
) -> TurnParse:
    """Ask one persona for a turn, retrying in place while the reply is unparseable."""
    request = GenerationRequest.from_text(
        model,
        prompt,
        temperature=config.temperature,
        response_schema=TURN_SCHEMA,
        operation="outlineTurn",
    )
    result: TurnParse = Unparseable(raw_text="", reason="no attempt made")

    for attempt in range(1, config.turn_retries + 1):
        check_cancelled(cancel, "outline negotiation")
        response = await executor.execute(request, cancel)
        result = parse_turn(response.text, persona)
        if isinstance(result, Parsed):
            return result

        preview = result.raw_text[:200] + ("..." if len(result.raw_text) > 200 else "")
        logger.warning(
            "%s (turn %d, attempt %d/%d) returned an unusable reply: %s. Preview: %r",
            _PERSONA_NAMES[persona], turn_number, attempt, config.turn_retries,
            result.reason, preview,
        )
        if attempt < config.turn_retries:
            delays = config.turn_retry_delays_sec
            delay = delays[min(attempt - 1, len(delays) - 1)] if delays else 0.0
            await interruptible_sleep(delay, cancel, "outline negotiation")

    return result


async def _fallback_outline(
    topic: str,
    turns: list[DebateTurn],
    model: str,
    executor: Executor,
    config: NegotiationConfig,
    prompts: PromptsConfig,
    cancel: asyncio.Event | None,
) -> str:
    """Single-shot outline synthesized from whatever the debate produced."""
    check_cancelled(cancel, "outline negotiation")
    prompt = prompts.fallback.format(
        topic=topic,
        transcript=format_transcript(turns) or "No turns were accepted.",
    )
    request = GenerationRequest.from_text(
        model, prompt, temperature=config.fallback_temperature, operation="outlineFallback"
    )
    response = await executor.execute(request, cancel)
    outline = response.text.strip()
    if not outline:
        raise NoUsableOutput(
            "outline", f"Fallback outline generation returned no content after {len(turns)} accepted turn(s)"
        )
    return outline


async def run_negotiation(
    topic: str,
    context: str,
    mode: str,
    executor: Executor,
    config: NegotiationConfig,
    prompts: PromptsConfig,
    models: ModelsConfig,
    cancel: asyncio.Event | None = None,
    on_turn: Callable[[DebateTurn], None] | None = None,
    max_rounds: int | None = None,
) -> NegotiationResult:
    """Drive the strategist/implementer debate until finalize or budget exhaustion.

    Args:
        topic: The research topic being outlined.
        context: Free-text context (clarifications, attached file text).
        mode: Operating mode; selects the outline model.
        executor: Execution layer used for every turn.
        config: Round budget, in-place retries and temperatures.
        prompts: Prompt templates and persona briefs.
        models: Model table.
        cancel: Checked before each turn; when set, CancelledByUser is raised.
        on_turn: Optional observer called once per accepted turn.
        max_rounds: Overrides config.max_rounds.

    Returns:
        NegotiationResult with the finalized (or fallback) outline.

    Raises:
        CancelledByUser: the cancel event fired.
        AllCredentialsExhausted: the execution layer gave up on a request.
        NoUsableOutput: the fallback call produced nothing.
    """
    budget = max_rounds if max_rounds is not None else config.max_rounds
    model = models.model_for("outline", mode)
    turns: list[DebateTurn] = []
    persona = Persona.STRATEGIST
    turns_taken = 0
    consecutive_skips = 0

    logger.info("Starting outline negotiation (%d rounds max) with %s", budget, model)

    while turns_taken < budget:
        check_cancelled(cancel, "outline negotiation")
        turns_taken += 1
        prompt = _turn_prompt(prompts, persona, topic, context, turns)
        result = await _take_turn(persona, prompt, model, executor, config, cancel, turns_taken)

        if isinstance(result, Unparseable):
            consecutive_skips += 1
            logger.error(
                "%s failed to provide a valid turn after %d attempt(s); skipping turn %d/%d",
                _PERSONA_NAMES[persona], config.turn_retries, turns_taken, budget,
            )
            if consecutive_skips >= 2:
                logger.warning(
                    "Both personas produced unusable turns in a row; negotiation is degraded"
                )
            persona = persona.other()
            continue

        consecutive_skips = 0
        turn = result.turn
        turns.append(turn)
        if on_turn:
            on_turn(turn)

        if turn.action is TurnAction.FINALIZE and turn.final_outline:
            logger.info(
                "Outline finalized by %s on turn %d", _PERSONA_NAMES[persona], turns_taken
            )
            return NegotiationResult(
                outline=turn.final_outline,
                state=NegotiationState.FINALIZED,
                turns_taken=turns_taken,
                accepted_turns=len(turns),
            )

        persona = persona.other()

    logger.info(
        "Round budget of %d exhausted without a finalized outline; running fallback synthesis",
        budget,
    )
    outline = await _fallback_outline(topic, turns, model, executor, config, prompts, cancel)
    return NegotiationResult(
        outline=outline,
        state=NegotiationState.EXHAUSTED,
        turns_taken=turns_taken,
        accepted_turns=len(turns),
    )
