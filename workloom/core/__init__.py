# Lazy imports to avoid triggering full dependency chain.
# This allows targeted imports like `from workloom.core.db.models import Base`
# without pulling in llama_index, the review engine, etc.

__all__ = [
    "AnalysisOrchestrator",
    "AnalysisWorker",
    "ReviewEngine",
    "ReportSynthesizer",
    "DiffFetcher",
    "LLMGateway",
    "calculate_metrics",
    "cluster_commits",
    "score_work_unit",
    "select_samples",
]

_IMPORT_MAP = {
    "AnalysisOrchestrator": ".jobs",
    "AnalysisWorker": ".jobs",
    "ReviewEngine": ".review",
    "ReportSynthesizer": ".report",
    "DiffFetcher": ".analysis",
    "LLMGateway": ".gateway",
    "calculate_metrics": ".analysis",
    "cluster_commits": ".analysis",
    "score_work_unit": ".analysis",
    "select_samples": ".analysis",
}


def __getattr__(name):
    if name in _IMPORT_MAP:
        import importlib
        module = importlib.import_module(_IMPORT_MAP[name], __package__)
        return getattr(module, name)
    raise AttributeError(f"module 'workloom.core' has no attribute {name}")
