"""
Configuration loader: YAML + .env + env overrides.
Every threshold the pipeline uses is product policy and lives here, not in code.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from core.exceptions import ConfigError

try:
    import yaml
    YAML_AVAILABLE = True
except ImportError:
    YAML_AVAILABLE = False

WEIGHT_SUM_TOLERANCE = 1e-9

DEFAULT_INVOICE_WEIGHTS: dict[str, float] = {
    "identifiers": 0.25,
    "line_items": 0.25,
    "tax_calculations": 0.20,
    "grand_total": 0.15,
    "header": 0.15,
}
DEFAULT_IDENTITY_WEIGHTS: dict[str, float] = {
    "identifiers": 0.45,
    "holder_name": 0.30,
    "date_of_birth": 0.15,
    "header": 0.10,
}


def _coerce_float(s: Any, default: float = 0.0) -> float:
    if s is None or s == "":
        return default
    try:
        return float(s)
    except (TypeError, ValueError):
        return default


def _coerce_int(s: Any, default: int = 0) -> int:
    if s is None or s == "":
        return default
    try:
        return int(s)
    except (TypeError, ValueError):
        return default


def validate_weight_table(weights: dict[str, float], name: str = "weights") -> dict[str, float]:
    """Raise ConfigError unless every weight is non-negative and they sum to 1.0."""
    if not weights:
        raise ConfigError(f"{name}: weight table is empty")
    for key, w in weights.items():
        if w < 0:
            raise ConfigError(f"{name}: negative weight for {key!r}")
    total = sum(weights.values())
    if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
        raise ConfigError(f"{name}: weights sum to {total}, expected 1.0")
    return dict(weights)


@dataclass(frozen=True)
class LLMConfig:
    """Structured-extraction LLM endpoint and model."""

    provider: str = "openai"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    timeout_sec: float = 60.0
    max_tokens: int = 4096
    temperature: float = 0.0
    max_retries: int = 2
    retry_delay_sec: float = 1.0


@dataclass(frozen=True)
class ProviderConfig:
    """One recognition provider in the fallback chain."""

    name: str
    kind: str = "tesseract"  # tesseract | vision_llm
    cost: float = 0.0
    declared_accuracy: float = 0.8
    timeout_sec: float = 30.0
    model: str = ""
    base_url: str = ""
    api_key: str = ""
    language: str = "eng"


def _default_providers() -> tuple[ProviderConfig, ...]:
    return (
        ProviderConfig(name="tesseract", kind="tesseract", cost=0.0, declared_accuracy=0.80, timeout_sec=30.0),
        ProviderConfig(name="vision_llm", kind="vision_llm", cost=0.01, declared_accuracy=0.92, timeout_sec=60.0),
    )


@dataclass(frozen=True)
class OrchestratorConfig:
    """Fallback chain thresholds (by cost rank; last value repeats) and retry backoff."""

    tier_thresholds: tuple[float, ...] = (0.80, 0.85, 0.90)
    retry_backoff_sec: float = 0.5
    retry_jitter_sec: float = 0.25


@dataclass(frozen=True)
class ValidatorConfig:
    """Tolerances and cut-offs for the domain rule battery."""

    amount_tolerance: float = 1.0
    split_tolerance: float = 0.5
    code_mandatory_threshold: float = 50000.0
    b2b_threshold: float = 250000.0
    stale_invoice_days: int = 365
    max_due_days: int = 183


@dataclass(frozen=True)
class ScoringConfig:
    """Weight tables per document kind and the per-field cap for fields with violations."""

    invoice_weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_INVOICE_WEIGHTS))
    identity_weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_IDENTITY_WEIGHTS))
    violation_field_cap: float = 0.70
    critical_cap: float = 0.80


@dataclass(frozen=True)
class DecisionConfig:
    """Auto-approve gate and high-value override."""

    auto_approve_threshold: float = 0.95
    review_medium_threshold: float = 0.85
    high_value_threshold: float = 100000.0
    high_value_min_confidence: float = 0.98


@dataclass(frozen=True)
class ReviewConfig:
    min_pattern_occurrences: int = 3


@dataclass(frozen=True)
class SessionConfig:
    """Conversational gate: inactivity timeout, rate limit, dedup window."""

    timeout_min: float = 30.0
    rate_limit_per_hour: int = 20
    rate_window_sec: float = 3600.0
    dedup_window_sec: float = 600.0


@dataclass(frozen=True)
class WorkerConfig:
    max_workers: int = 4


@dataclass(frozen=True)
class AppConfig:
    """Immutable application configuration. Built from YAML + env."""

    log_level: str = "INFO"
    llm: LLMConfig = field(default_factory=LLMConfig)
    providers: tuple[ProviderConfig, ...] = field(default_factory=_default_providers)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    decision: DecisionConfig = field(default_factory=DecisionConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)

    def with_overrides(self, **overrides: Any) -> AppConfig:
        """Return new config with replaced top-level sections (None values ignored)."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    if not YAML_AVAILABLE:
        return {}
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def _weights_from(data: Any, default: dict[str, float], name: str) -> dict[str, float]:
    if not isinstance(data, dict) or not data:
        return dict(default)
    weights = {str(k): _coerce_float(v, -1.0) for k, v in data.items()}
    return validate_weight_table(weights, name)


def _provider_from_dict(d: dict[str, Any]) -> ProviderConfig:
    name = str(d.get("name") or d.get("kind") or "provider")
    return ProviderConfig(
        name=name,
        kind=str(d.get("kind", name)).strip().lower(),
        cost=_coerce_float(d.get("cost"), 0.0),
        declared_accuracy=_coerce_float(d.get("declared_accuracy"), 0.8),
        timeout_sec=_coerce_float(d.get("timeout_sec"), 30.0),
        model=str(d.get("model") or ""),
        base_url=str(d.get("base_url") or ""),
        api_key=str(d.get("api_key") or ""),
        language=str(d.get("language") or "eng"),
    )


def _config_from_dict(data: dict[str, Any]) -> AppConfig:
    """Build AppConfig from nested dict. Env overrides applied in load_config."""
    llm_data = data.get("llm") or {}
    orch_data = data.get("orchestrator") or {}
    val_data = data.get("validator") or {}
    score_data = data.get("scoring") or {}
    dec_data = data.get("decision") or {}
    rev_data = data.get("review") or {}
    ses_data = data.get("session") or {}
    wrk_data = data.get("workers") or {}
    providers_data = data.get("providers")

    tiers = orch_data.get("tier_thresholds")
    if isinstance(tiers, (list, tuple)) and tiers:
        tier_thresholds = tuple(_coerce_float(t, 0.8) for t in tiers)
    else:
        tier_thresholds = OrchestratorConfig.tier_thresholds

    if isinstance(providers_data, list) and providers_data:
        providers = tuple(_provider_from_dict(p) for p in providers_data if isinstance(p, dict))
    else:
        providers = _default_providers()

    return AppConfig(
        log_level=str(data.get("log_level", "INFO")),
        llm=LLMConfig(
            provider=str(llm_data.get("provider", "openai")),
            base_url=str(llm_data.get("base_url", "https://api.openai.com/v1")),
            api_key=str(llm_data.get("api_key", "")),
            model=str(llm_data.get("model", "gpt-4o-mini")),
            timeout_sec=_coerce_float(llm_data.get("timeout_sec"), 60.0),
            max_tokens=_coerce_int(llm_data.get("max_tokens"), 4096),
            temperature=_coerce_float(llm_data.get("temperature"), 0.0),
            max_retries=_coerce_int(llm_data.get("max_retries"), 2),
            retry_delay_sec=_coerce_float(llm_data.get("retry_delay_sec"), 1.0),
        ),
        providers=providers,
        orchestrator=OrchestratorConfig(
            tier_thresholds=tier_thresholds,
            retry_backoff_sec=_coerce_float(orch_data.get("retry_backoff_sec"), 0.5),
            retry_jitter_sec=_coerce_float(orch_data.get("retry_jitter_sec"), 0.25),
        ),
        validator=ValidatorConfig(
            amount_tolerance=_coerce_float(val_data.get("amount_tolerance"), 1.0),
            split_tolerance=_coerce_float(val_data.get("split_tolerance"), 0.5),
            code_mandatory_threshold=_coerce_float(val_data.get("code_mandatory_threshold"), 50000.0),
            b2b_threshold=_coerce_float(val_data.get("b2b_threshold"), 250000.0),
            stale_invoice_days=_coerce_int(val_data.get("stale_invoice_days"), 365),
            max_due_days=_coerce_int(val_data.get("max_due_days"), 183),
        ),
        scoring=ScoringConfig(
            invoice_weights=_weights_from(score_data.get("invoice_weights"), DEFAULT_INVOICE_WEIGHTS, "invoice_weights"),
            identity_weights=_weights_from(score_data.get("identity_weights"), DEFAULT_IDENTITY_WEIGHTS, "identity_weights"),
            violation_field_cap=_coerce_float(score_data.get("violation_field_cap"), 0.70),
            critical_cap=_coerce_float(score_data.get("critical_cap"), 0.80),
        ),
        decision=DecisionConfig(
            auto_approve_threshold=_coerce_float(dec_data.get("auto_approve_threshold"), 0.95),
            review_medium_threshold=_coerce_float(dec_data.get("review_medium_threshold"), 0.85),
            high_value_threshold=_coerce_float(dec_data.get("high_value_threshold"), 100000.0),
            high_value_min_confidence=_coerce_float(dec_data.get("high_value_min_confidence"), 0.98),
        ),
        review=ReviewConfig(
            min_pattern_occurrences=_coerce_int(rev_data.get("min_pattern_occurrences"), 3),
        ),
        session=SessionConfig(
            timeout_min=_coerce_float(ses_data.get("timeout_min"), 30.0),
            rate_limit_per_hour=_coerce_int(ses_data.get("rate_limit_per_hour"), 20),
            rate_window_sec=_coerce_float(ses_data.get("rate_window_sec"), 3600.0),
            dedup_window_sec=_coerce_float(ses_data.get("dedup_window_sec"), 600.0),
        ),
        workers=WorkerConfig(max_workers=max(1, _coerce_int(wrk_data.get("max_workers", data.get("max_workers")), 4))),
    )


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """
    Load config from YAML file, then .env, then env overrides.
    Env vars: LLM_PROVIDER, LLM_BASE_URL, LLM_MODEL, LLM_API_KEY, LOG_LEVEL, AUTO_APPROVE_THRESHOLD,
    HIGH_VALUE_THRESHOLD, RATE_LIMIT_PER_HOUR, SESSION_TIMEOUT_MIN, MAX_WORKERS.
    """
    load_dotenv()
    path = Path(config_path or os.getenv("CONFIG_PATH") or "config.yaml")
    cfg = _config_from_dict(_load_yaml(path))

    overrides: dict[str, Any] = {}
    if os.getenv("LOG_LEVEL"):
        overrides["log_level"] = os.getenv("LOG_LEVEL")
    if os.getenv("MAX_WORKERS"):
        overrides["workers"] = WorkerConfig(max_workers=max(1, _coerce_int(os.getenv("MAX_WORKERS"), cfg.workers.max_workers)))

    provider = os.getenv("LLM_PROVIDER")
    base_url = os.getenv("LLM_BASE_URL")
    model = os.getenv("LLM_MODEL")
    api_key = os.getenv("LLM_API_KEY")
    if provider or base_url or model or api_key:
        llm = cfg.llm
        overrides["llm"] = replace(
            llm,
            provider=provider or llm.provider,
            base_url=base_url or llm.base_url,
            model=model or llm.model,
            api_key=api_key or llm.api_key,
        )

    auto = os.getenv("AUTO_APPROVE_THRESHOLD")
    high_value = os.getenv("HIGH_VALUE_THRESHOLD")
    if auto or high_value:
        dec = cfg.decision
        overrides["decision"] = replace(
            dec,
            auto_approve_threshold=_coerce_float(auto, dec.auto_approve_threshold),
            high_value_threshold=_coerce_float(high_value, dec.high_value_threshold),
        )

    rate = os.getenv("RATE_LIMIT_PER_HOUR")
    timeout = os.getenv("SESSION_TIMEOUT_MIN")
    if rate or timeout:
        ses = cfg.session
        overrides["session"] = replace(
            ses,
            rate_limit_per_hour=_coerce_int(rate, ses.rate_limit_per_hour),
            timeout_min=_coerce_float(timeout, ses.timeout_min),
        )

    if not overrides:
        return cfg
    return cfg.with_overrides(**overrides)
