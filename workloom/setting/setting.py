"""Application settings loaded from config/workloom.yaml.

Precedence: environment (DATABASE_URL, LLM_MODEL) > YAML file > defaults.
Per-run options are layered on top by ``AnalysisSettings.with_overrides``.
"""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "WORKLOOM_CONFIG"
DEFAULT_CONFIG_FILE = "workloom.yaml"


class CriticalPath(BaseModel):
    pattern: str
    weight: float = 1.0


class ClusteringSettings(BaseModel):
    max_time_gap_hours: float = 8.0
    rapid_fire_minutes: float = 60.0
    min_path_similarity: float = 0.3
    max_commits_per_unit: int = 50


class ScoringSettings(BaseModel):
    loc_cap: int = 5000
    size_weight: float = 8.0
    size_cap: float = 30.0
    core_module_weight: float = 2.0
    core_module_cap: float = 20.0
    hotspot_weight: float = 1.5
    hotspot_cap: float = 15.0
    config_bonus: float = 4.0
    schema_bonus: float = 6.0
    config_schema_cap: float = 10.0
    test_ratio_high_penalty: float = -3.0
    test_ratio_balanced_bonus: float = 2.0
    breadth_per_file: float = 0.5
    breadth_cap: float = 10.0
    hotfix_bonus: float = 3.0
    revert_penalty: float = -2.0
    hotspot_top_n: int = 20
    hotspot_window_days: int = 365
    critical_paths: List[CriticalPath] = Field(default_factory=lambda: [
        CriticalPath(pattern="auth", weight=2.0),
        CriticalPath(pattern="payment", weight=2.5),
        CriticalPath(pattern="security", weight=2.0),
        CriticalPath(pattern="core", weight=1.8),
        CriticalPath(pattern="api", weight=1.5),
        CriticalPath(pattern="database", weight=1.8),
        CriticalPath(pattern="migration", weight=1.5),
    ])


class SamplingSettings(BaseModel):
    top_k: int = 7
    random_k: int = 3
    special_k: int = 2


class DiffSettings(BaseModel):
    max_tries: int = 3
    max_time: float = 60.0
    max_patch_chars: int = 20_000


class ReviewSettings(BaseModel):
    concurrency: int = 5
    max_attempts: int = 3
    base_backoff_seconds: float = 2.0
    max_diff_chars: int = 40_000
    model: Optional[str] = None
    provider: str = "ollama"                 # ollama|openai
    temperature: float = 0.1
    ollama_base_url: str = "http://localhost:11434"
    request_timeout: float = 120.0


class DatabaseSettings(BaseModel):
    url: str = "sqlite:///workloom.db"
    echo: bool = False


class AnalysisSettings(BaseModel):
    """Root settings object."""
    clustering: ClusteringSettings = Field(default_factory=ClusteringSettings)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    sampling: SamplingSettings = Field(default_factory=SamplingSettings)
    diff: DiffSettings = Field(default_factory=DiffSettings)
    review: ReviewSettings = Field(default_factory=ReviewSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    team_standards: str = ""

    def with_overrides(self, options: Optional[Dict[str, Any]]) -> "AnalysisSettings":
        """Return a copy with per-run option sections merged in.

        ``options`` mirrors the YAML layout, e.g.
        ``{"clustering": {"max_time_gap_hours": 4}, "sampling": {"top_k": 5}}``.
        Unknown sections are ignored.
        """
        if not options:
            return self
        merged = self.model_dump()
        for section, values in options.items():
            if section in merged and isinstance(merged[section], dict) and isinstance(values, dict):
                merged[section].update(values)
            elif section == "team_standards" and isinstance(values, str):
                merged[section] = values
        return AnalysisSettings.model_validate(merged)


def get_config_path() -> Path:
    """Resolve the config file location (env override or ./config)."""
    override = os.getenv(CONFIG_ENV_VAR)
    if override:
        return Path(override)
    return Path(__file__).parent.parent.parent / "config" / DEFAULT_CONFIG_FILE


def load_settings(config_path: Optional[Path] = None) -> AnalysisSettings:
    """Load settings from YAML, falling back to defaults when absent."""
    path = config_path or get_config_path()
    data: Dict[str, Any] = {}

    if path.exists():
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        logger.info(f"Loaded settings from {path}")
    else:
        logger.warning(f"{path} not found, using default settings")

    settings = AnalysisSettings.model_validate(data)

    database_url = os.getenv("DATABASE_URL")
    if database_url:
        settings.database.url = database_url
    llm_model = os.getenv("LLM_MODEL")
    if llm_model:
        settings.review.model = llm_model

    return settings


@lru_cache(maxsize=1)
def get_settings() -> AnalysisSettings:
    """Cached application settings."""
    return load_settings()


def reload_settings() -> AnalysisSettings:
    """Clear the cache so the next read picks up file changes."""
    get_settings.cache_clear()
    return get_settings()
