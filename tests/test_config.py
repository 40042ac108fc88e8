"""Configuration loading: YAML sections, env overrides, weight-table validation."""
from __future__ import annotations

from pathlib import Path

import pytest

from core.exceptions import ConfigError
from utils.config import AppConfig, load_config

ENV_VARS = (
    "CONFIG_PATH",
    "LOG_LEVEL",
    "MAX_WORKERS",
    "LLM_PROVIDER",
    "LLM_BASE_URL",
    "LLM_MODEL",
    "LLM_API_KEY",
    "AUTO_APPROVE_THRESHOLD",
    "HIGH_VALUE_THRESHOLD",
    "RATE_LIMIT_PER_HOUR",
    "SESSION_TIMEOUT_MIN",
)
REPO_CONFIG = Path(__file__).resolve().parent.parent / "config.yaml"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_shipped_config_matches_defaults() -> None:
    assert load_config(REPO_CONFIG) == AppConfig()


def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "absent.yaml")
    assert cfg.decision.auto_approve_threshold == 0.95
    assert [p.name for p in cfg.providers] == ["tesseract", "vision_llm"]


def test_yaml_sections_are_read(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        """
providers:
  - name: local
    kind: tesseract
    language: eng+hin
  - name: gpt4o
    kind: vision_llm
    cost: 0.03
    model: gpt-4o
orchestrator:
  tier_thresholds: [0.7, 0.9]
decision:
  auto_approve_threshold: 0.97
session:
  timeout_min: 10
workers:
  max_workers: 8
scoring:
  identity_weights: {identifiers: 0.5, holder_name: 0.3, date_of_birth: 0.1, header: 0.1}
""",
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert [(p.name, p.kind) for p in cfg.providers] == [("local", "tesseract"), ("gpt4o", "vision_llm")]
    assert cfg.providers[0].language == "eng+hin"
    assert cfg.providers[1].cost == pytest.approx(0.03)
    assert cfg.orchestrator.tier_thresholds == (0.7, 0.9)
    assert cfg.decision.auto_approve_threshold == 0.97
    assert cfg.session.timeout_min == 10
    assert cfg.workers.max_workers == 8
    assert cfg.scoring.identity_weights["identifiers"] == 0.5


def test_bad_weights_fail_at_load(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("scoring:\n  invoice_weights: {identifiers: 0.5, line_items: 0.6}\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="invoice_weights"):
        load_config(path)


def test_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTO_APPROVE_THRESHOLD", "0.9")
    monkeypatch.setenv("LLM_MODEL", "llama3.2")
    monkeypatch.setenv("LLM_PROVIDER", "ollama")
    monkeypatch.setenv("RATE_LIMIT_PER_HOUR", "5")
    monkeypatch.setenv("MAX_WORKERS", "2")
    cfg = load_config(tmp_path / "absent.yaml")
    assert cfg.decision.auto_approve_threshold == 0.9
    assert cfg.decision.high_value_threshold == 100000.0
    assert (cfg.llm.provider, cfg.llm.model) == ("ollama", "llama3.2")
    assert cfg.session.rate_limit_per_hour == 5
    assert cfg.session.timeout_min == 30.0
    assert cfg.workers.max_workers == 2


def test_config_path_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "custom.yaml"
    path.write_text("log_level: DEBUG\n", encoding="utf-8")
    monkeypatch.setenv("CONFIG_PATH", str(path))
    assert load_config().log_level == "DEBUG"
