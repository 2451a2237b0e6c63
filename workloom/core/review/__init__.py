"""Staged AI review.

Public API:
    ReviewEngine        : stage 0-4 execution and persistence
    parse_json_output   : fenced/raw JSON extraction from completions
"""

from .engine import ReviewEngine, parse_json_output
from .models import ReviewParseError, normalize

__all__ = ["ReviewEngine", "parse_json_output", "ReviewParseError", "normalize"]
