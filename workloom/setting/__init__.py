from .setting import (
    AnalysisSettings,
    ClusteringSettings,
    CriticalPath,
    DatabaseSettings,
    DiffSettings,
    ReviewSettings,
    SamplingSettings,
    ScoringSettings,
    get_config_path,
    get_settings,
    load_settings,
    reload_settings,
)

__all__ = [
    "AnalysisSettings",
    "ClusteringSettings",
    "CriticalPath",
    "DatabaseSettings",
    "DiffSettings",
    "ReviewSettings",
    "SamplingSettings",
    "ScoringSettings",
    "get_config_path",
    "get_settings",
    "load_settings",
    "reload_settings",
]
