from .synthesizer import ReportSynthesizer, build_narrative, compute_report_stats

__all__ = ["ReportSynthesizer", "build_narrative", "compute_report_stats"]
