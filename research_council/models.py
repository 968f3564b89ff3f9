"""Plain dataclasses and enums for the research pipeline. No logic beyond trivial helpers."""

from dataclasses import dataclass, field
from enum import Enum


class Persona(str, Enum):
    STRATEGIST = "strategist"
    IMPLEMENTER = "implementer"

    def other(self) -> "Persona":
        return Persona.IMPLEMENTER if self is Persona.STRATEGIST else Persona.STRATEGIST


class TurnAction(str, Enum):
    CONTINUE = "continue"
    FINALIZE = "finalize"


class NegotiationState(str, Enum):
    AWAITING_TURN = "awaiting_turn"
    FINALIZED = "finalized"
    EXHAUSTED = "exhausted"


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    EMPTY_RESPONSE = "empty_response"
    MALFORMED_RESPONSE = "malformed_response"
    USER_CANCELLED = "user_cancelled"
    TIMEOUT = "timeout"
    REQUEST_REJECTED = "request_rejected"  # non-429 4xx, e.g. a revoked key


@dataclass(frozen=True)
class Part:
    text: str | None = None
    mime_type: str | None = None
    data: str | None = None   # base64 payload for inline attachments


@dataclass(frozen=True)
class GenerationRequest:
    model: str
    parts: tuple[Part, ...]
    temperature: float | None = None
    response_schema: dict | None = None
    tools: tuple[str, ...] = ()
    operation: str = "generateContent"

    @classmethod
    def from_text(cls, model: str, text: str, **kwargs) -> "GenerationRequest":
        return cls(model=model, parts=(Part(text=text),), **kwargs)

    def summary(self, limit: int = 500) -> str:
        """First text part, truncated for logging."""
        text = next((p.text for p in self.parts if p.text), "")
        attachments = sum(1 for p in self.parts if p.data)
        if len(text) > limit:
            text = text[:limit] + "...[TRUNCATED]"
        suffix = f" (+{attachments} attachment(s))" if attachments else ""
        return text.replace("\n", " ") + suffix


@dataclass
class Source:
    url: str
    title: str


@dataclass
class LLMResponse:
    text: str
    model: str
    sources: list[Source] = field(default_factory=list)
    latency_sec: float = 0.0
    token_count: int | None = None


@dataclass
class Citation:
    url: str
    title: str
    authors: str | None = None
    year: str | None = None
    source: str | None = None
    access_date: str | None = None
    id: int | None = None
    times_cited: int = 0


@dataclass
class DebateTurn:
    persona: Persona
    thought: str
    action: TurnAction
    final_outline: str | None = None
    timestamp: float = 0.0


@dataclass
class Parsed:
    turn: DebateTurn


@dataclass
class Unparseable:
    raw_text: str
    reason: str


TurnParse = Parsed | Unparseable


@dataclass
class NegotiationResult:
    outline: str
    state: NegotiationState
    turns_taken: int
    accepted_turns: int


@dataclass
class Finding:
    query: str
    text: str
    citation_ids: list[int] = field(default_factory=list)


@dataclass
class ResearchReport:
    topic: str
    mode: str
    outline: str | None
    document: str
    citations: list[Citation]
    duration_sec: float
