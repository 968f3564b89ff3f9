"""Load settings.yaml into typed dataclasses. Reports which credential variables are set."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class ExecutionConfig:
    retries_per_credential: int = 2
    timeout_sec: float = 600.0
    server_error_base_delay_sec: float = 5.0
    base_delay_sec: float = 3.0
    max_jitter_sec: float = 1.0
    retry_after_buffer_sec: float = 0.5
    log_truncate_chars: int = 500


@dataclass
class IntervalConfig:
    base_delay_sec: float = 15.0
    dynamic_adjustment: bool = True
    mode_multipliers: dict[str, float] = field(default_factory=dict)
    error_threshold: int = 3
    error_multiplier: float = 1.5
    max_delay_sec: float = 20.0
    window_sec: float = 300.0
    history_size: int = 10


@dataclass
class NegotiationConfig:
    max_rounds: int = 20
    turn_retries: int = 2
    turn_retry_delays_sec: list[float] = field(default_factory=lambda: [3.0, 6.0])
    temperature: float = 0.7
    fallback_temperature: float = 0.6


@dataclass
class SynthesisConfig:
    section_pause_sec: float = 1.5
    temperature: float = 0.5
    rewrite_temperature: float = 0.7


@dataclass
class SearchConfig:
    per_domain_limit: int = 2
    max_sources: int = 15
    ideal_sources: int = 10


@dataclass
class ModelsConfig:
    provider: str
    roles: dict[str, str]
    mode_overrides: dict[str, dict[str, str]] = field(default_factory=dict)
    base_url: str | None = None

    def model_for(self, role: str, mode: str) -> str:
        """Resolve the model for a role, honoring per-mode overrides."""
        override = self.mode_overrides.get(mode, {}).get(role)
        if override:
            return override
        try:
            return self.roles[role]
        except KeyError:
            raise KeyError(f"No model configured for role '{role}'") from None


@dataclass
class PromptsConfig:
    turn: str
    first_turn_instruction: str
    next_turn_instruction: str
    fallback: str
    section: str
    whole_document: str
    search: str
    section_search: str
    rewrite: str
    personas: dict[str, str] = field(default_factory=dict)


@dataclass
class DefaultsConfig:
    mode: str
    output_dir: Path


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: ModelsConfig
    prompts: PromptsConfig
    execution: ExecutionConfig
    interval: IntervalConfig
    negotiation: NegotiationConfig
    synthesis: SynthesisConfig
    search: SearchConfig
    api_key_envs: list[str] = field(default_factory=list)
    available_key_envs: list[str] = field(default_factory=list)


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs which credential variables are set but does not raise; callers check
    the credential pool size.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        mode=str(defaults_raw.get("mode", "balanced")),
        output_dir=Path(defaults_raw["output_dir"]),
    )

    models_raw = raw["models"]
    models = ModelsConfig(
        provider=str(models_raw.get("provider", "gemini")),
        roles={k: str(v) for k, v in models_raw["roles"].items()},
        mode_overrides={
            mode: {role: str(model) for role, model in (overrides or {}).items()}
            for mode, overrides in (models_raw.get("mode_overrides") or {}).items()
        },
        base_url=models_raw.get("base_url"),
    )

    prompts_raw = raw["prompts"]
    personas_raw = raw.get("personas") or {}
    prompts = PromptsConfig(
        turn=prompts_raw["turn"],
        first_turn_instruction=prompts_raw["first_turn_instruction"],
        next_turn_instruction=prompts_raw["next_turn_instruction"],
        fallback=prompts_raw["fallback"],
        section=prompts_raw["section"],
        whole_document=prompts_raw["whole_document"],
        search=prompts_raw["search"],
        section_search=prompts_raw["section_search"],
        rewrite=prompts_raw["rewrite"],
        personas={k: str(v) for k, v in personas_raw.items()},
    )

    execution_raw = raw.get("execution") or {}
    execution = ExecutionConfig(
        retries_per_credential=int(execution_raw.get("retries_per_credential", 2)),
        timeout_sec=float(execution_raw.get("timeout_sec", 600)),
        server_error_base_delay_sec=float(execution_raw.get("server_error_base_delay_sec", 5)),
        base_delay_sec=float(execution_raw.get("base_delay_sec", 3)),
        max_jitter_sec=float(execution_raw.get("max_jitter_sec", 1)),
        retry_after_buffer_sec=float(execution_raw.get("retry_after_buffer_sec", 0.5)),
        log_truncate_chars=int(execution_raw.get("log_truncate_chars", 500)),
    )
    if execution.retries_per_credential < 1:
        raise ValueError("execution.retries_per_credential must be >= 1")

    interval_raw = raw.get("interval") or {}
    interval = IntervalConfig(
        base_delay_sec=float(interval_raw.get("base_delay_sec", 15)),
        dynamic_adjustment=bool(interval_raw.get("dynamic_adjustment", True)),
        mode_multipliers={
            k: float(v) for k, v in (interval_raw.get("mode_multipliers") or {}).items()
        },
        error_threshold=int(interval_raw.get("error_threshold", 3)),
        error_multiplier=float(interval_raw.get("error_multiplier", 1.5)),
        max_delay_sec=float(interval_raw.get("max_delay_sec", 20)),
        window_sec=float(interval_raw.get("window_sec", 300)),
        history_size=int(interval_raw.get("history_size", 10)),
    )

    negotiation_raw = raw.get("negotiation") or {}
    negotiation = NegotiationConfig(
        max_rounds=int(negotiation_raw.get("max_rounds", 20)),
        turn_retries=int(negotiation_raw.get("turn_retries", 2)),
        turn_retry_delays_sec=[
            float(d) for d in negotiation_raw.get("turn_retry_delays_sec", [3, 6])
        ],
        temperature=float(negotiation_raw.get("temperature", 0.7)),
        fallback_temperature=float(negotiation_raw.get("fallback_temperature", 0.6)),
    )
    if negotiation.turn_retries < 1:
        raise ValueError("negotiation.turn_retries must be >= 1")

    synthesis_raw = raw.get("synthesis") or {}
    synthesis = SynthesisConfig(
        section_pause_sec=float(synthesis_raw.get("section_pause_sec", 1.5)),
        temperature=float(synthesis_raw.get("temperature", 0.5)),
        rewrite_temperature=float(synthesis_raw.get("rewrite_temperature", 0.7)),
    )

    search_raw = raw.get("search") or {}
    search = SearchConfig(
        per_domain_limit=int(search_raw.get("per_domain_limit", 2)),
        max_sources=int(search_raw.get("max_sources", 15)),
        ideal_sources=int(search_raw.get("ideal_sources", 10)),
    )

    api_key_envs = list((raw.get("credentials") or {}).get("api_key_envs", []))
    available_key_envs: list[str] = []
    for env_name in api_key_envs:
        if os.environ.get(env_name, "").strip():
            available_key_envs.append(env_name)
            logger.info("Credential variable set: %s", env_name)
        else:
            logger.info("Credential variable empty: %s (set it in .env)", env_name)

    return AppConfig(
        defaults=defaults,
        models=models,
        prompts=prompts,
        execution=execution,
        interval=interval,
        negotiation=negotiation,
        synthesis=synthesis,
        search=search,
        api_key_envs=api_key_envs,
        available_key_envs=available_key_envs,
    )
