"""Impact scoring: bounded, auditable score per work unit.

score = clamp(size + core_module + hotspot + config_schema
              + test_ratio + breadth + special_case, 0, MAX_IMPACT_SCORE)

Every component is individually capped, and the size component is a
damped log of changed lines over a hard line cap, so a single
+100,000 line commit cannot dominate. No randomness, no clock.
"""

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..constants import MAX_IMPACT_SCORE
from .models import (
    CommitRecord, FileChange, ImpactScore, ScoringInput, SpecialCaseKind,
)

logger = logging.getLogger(__name__)

TEST_FILE_PATTERNS = [
    re.compile(p) for p in (
        r"\.test\.[jt]sx?$", r"\.spec\.[jt]sx?$", r"_test\.\w+$", r"_spec\.\w+$",
        r"(^|/)test_[^/]*\.\w+$", r"(^|/)tests?/", r"__tests__/", r"\.test\.", r"\.spec\.",
    )
]
CONFIG_FILE_PATTERNS = [
    re.compile(p) for p in (
        r"\.config\.[jt]sx?$", r"(^|/)\.env", r"config\.\w+$", r"settings\.\w+$",
        r"\.json$", r"\.ya?ml$", r"\.toml$", r"\.ini$", r"\.cfg$",
        r"Dockerfile", r"docker-compose", r"nginx\.conf",
    )
]
SCHEMA_FILE_PATTERNS = [
    re.compile(p) for p in (
        r"schema\.prisma$", r"schema\.\w+$", r"(^|/)migrations?/", r"(^|/)alembic/",
        r"\.sql$", r"\.graphql$", r"\.proto$",
    )
]
DOC_FILE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\.mdx?$", r"\.rst$", r"\.txt$", r"(^|/)docs?/", r"README", r"CHANGELOG", r"LICENSE",
    )
]


def is_test_file(path: str) -> bool:
    return any(p.search(path) for p in TEST_FILE_PATTERNS)


def is_config_file(path: str) -> bool:
    return any(p.search(path) for p in CONFIG_FILE_PATTERNS)


def is_schema_file(path: str) -> bool:
    return any(p.search(path) for p in SCHEMA_FILE_PATTERNS)


def is_doc_file(path: str) -> bool:
    return any(p.search(path) for p in DOC_FILE_PATTERNS)


@dataclass
class ScoringWeights:
    """Component weights and caps (mirrors ScoringSettings)."""
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

    @classmethod
    def from_settings(cls, settings) -> "ScoringWeights":
        names = cls.__dataclass_fields__.keys()
        return cls(**{name: getattr(settings, name) for name in names})


@dataclass
class CriticalPathRule:
    pattern: str
    weight: float

    def matches(self, path: str) -> bool:
        if any(ch in self.pattern for ch in "*?["):
            return fnmatch(path, self.pattern)
        return self.pattern.lower() in path.lower()


def build_rules(critical_paths: Iterable[Any]) -> List[CriticalPathRule]:
    """Accept dicts, pydantic models or CriticalPathRule instances."""
    rules = []
    for cp in critical_paths or []:
        if isinstance(cp, CriticalPathRule):
            rules.append(cp)
        elif isinstance(cp, dict):
            rules.append(CriticalPathRule(pattern=cp["pattern"], weight=float(cp.get("weight", 1.0))))
        else:
            rules.append(CriticalPathRule(pattern=cp.pattern, weight=float(cp.weight)))
    return rules


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def score_work_unit(
    unit: ScoringInput,
    critical_paths: Sequence[Any] = (),
    hotspot_files: Iterable[str] = (),
    weights: Optional[ScoringWeights] = None,
) -> ImpactScore:
    """Compute the bounded impact score for one unit."""
    w = weights or ScoringWeights()
    rules = build_rules(critical_paths)
    hotspots = set(hotspot_files)

    # Aggregate per path so a file touched by several commits counts once
    per_path: Dict[str, int] = {}
    for f in unit.files:
        per_path[f.path] = per_path.get(f.path, 0) + f.changes
    paths = sorted(per_path)
    total_lines = sum(per_path.values())

    # Size: damped and capped
    capped_loc = min(total_lines, w.loc_cap)
    size = _clamp(math.log10(capped_loc + 1) * w.size_weight, 0.0, w.size_cap)

    # Core module: each matched critical-path rule counts once
    matched_rules = [r for r in rules if any(r.matches(p) for p in paths)]
    core = _clamp(sum(r.weight for r in matched_rules) * w.core_module_weight, 0.0, w.core_module_cap)

    # Hotspot
    hotspot_matches = [p for p in paths if p in hotspots]
    hotspot = _clamp(len(hotspot_matches) * w.hotspot_weight, 0.0, w.hotspot_cap)

    # Config / schema
    config_files = [p for p in paths if is_config_file(p)]
    schema_files = [p for p in paths if is_schema_file(p)]
    config_schema = 0.0
    if config_files:
        config_schema += w.config_bonus
    if schema_files:
        config_schema += w.schema_bonus
    config_schema = _clamp(config_schema, 0.0, w.config_schema_cap)

    # Test ratio: share of changed lines in test files
    test_lines = sum(n for p, n in per_path.items() if is_test_file(p))
    test_ratio = test_lines / total_lines if total_lines else 0.0
    if test_ratio > 0.8:
        test_adjustment = w.test_ratio_high_penalty
    elif 0 < test_ratio <= 0.5:
        test_adjustment = w.test_ratio_balanced_bonus
    else:
        test_adjustment = 0.0
    bound = max(abs(w.test_ratio_high_penalty), abs(w.test_ratio_balanced_bonus))
    test_adjustment = _clamp(test_adjustment, -bound, bound)

    # Breadth
    breadth = _clamp(len(paths) * w.breadth_per_file, 0.0, w.breadth_cap)

    # Special case
    special = 0.0
    if unit.special_case == SpecialCaseKind.HOTFIX:
        special = w.hotfix_bonus
    elif unit.special_case == SpecialCaseKind.REVERT:
        special = w.revert_penalty

    raw = size + core + hotspot + config_schema + test_adjustment + breadth + special
    score = round(_clamp(raw, 0.0, MAX_IMPACT_SCORE), 2)

    factors = {
        "size": round(size, 2),
        "core_module": round(core, 2),
        "hotspot": round(hotspot, 2),
        "config_schema": round(config_schema, 2),
        "test_ratio": round(test_adjustment, 2),
        "breadth": round(breadth, 2),
        "special_case": round(special, 2),
        "raw_total": round(raw, 2),
        "total_lines": total_lines,
        "capped_lines": capped_loc,
        "file_count": len(paths),
        "test_line_ratio": round(test_ratio, 3),
        "matched_critical_paths": [r.pattern for r in matched_rules],
        "hotspot_files": hotspot_matches[:20],
        "config_files": config_files[:20],
        "schema_files": schema_files[:20],
    }
    return ImpactScore(score=score, factors=factors)


def scoring_input_from_commits(
    unit_id: str,
    commits: Sequence[CommitRecord],
    special_case: Optional[SpecialCaseKind] = None,
) -> ScoringInput:
    files: List[FileChange] = []
    for c in commits:
        if c.files:
            files.extend(c.files)
        elif c.additions or c.deletions:
            # No per-file stats: attribute the totals to an anonymous path
            files.append(FileChange(path=f"<{c.sha[:8]}>", additions=c.additions, deletions=c.deletions))
    return ScoringInput(unit_id=unit_id, files=files, special_case=special_case)


def calculate_hotspot_files(commits: Iterable[CommitRecord], top_n: int = 20) -> List[str]:
    """Most frequently changed paths (by commit count), ties broken by path."""
    counts = Counter(p for c in commits for p in set(c.paths))
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [path for path, _ in ranked[:top_n]]
