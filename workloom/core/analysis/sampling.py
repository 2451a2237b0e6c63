"""Review sampling: pick a small, reproducible subset of units.

Selection, in order:
  1. top_k units by impact score
  2. random_k more, uniformly without replacement from the remainder,
     using random.Random(seed) so the pick is reproducible per run
  3. up to special_k hotfix/revert units not already selected

Ranking ties are broken by (start_at, repo, sequence, unit_id) so the
ranked order, and therefore the seeded pick, never depends on input order.
"""

import hashlib
import logging
import random
from typing import List, Sequence

from .models import (
    SampleCandidate, SamplingResult, SelectionCategory, SelectionReason,
)

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 7
DEFAULT_RANDOM_K = 3
DEFAULT_SPECIAL_K = 2


def default_seed(run_id: str) -> str:
    """Deterministic per-run seed."""
    return hashlib.sha256(str(run_id).encode("utf-8")).hexdigest()[:32]


def rank_candidates(candidates: Sequence[SampleCandidate]) -> List[SampleCandidate]:
    return sorted(
        candidates,
        key=lambda c: (-(c.impact_score or 0.0), c.start_at, c.repo_name, c.sequence, c.unit_id),
    )


def select_samples(
    candidates: Sequence[SampleCandidate],
    seed: str,
    top_k: int = DEFAULT_TOP_K,
    random_k: int = DEFAULT_RANDOM_K,
    special_k: int = DEFAULT_SPECIAL_K,
) -> SamplingResult:
    """Select units for AI review. Never fails on small inputs."""
    ranked = rank_candidates(candidates)
    selected: List[str] = []
    reasons: List[SelectionReason] = []

    for position, c in enumerate(ranked[:max(top_k, 0)], start=1):
        selected.append(c.unit_id)
        reasons.append(SelectionReason(
            unit_id=c.unit_id,
            reason=f"Rank {position} by impact score ({c.impact_score:.2f})",
            category=SelectionCategory.TOP_IMPACT,
        ))

    chosen = set(selected)
    remainder = [c for c in ranked if c.unit_id not in chosen]
    rng = random.Random(seed)
    for c in rng.sample(remainder, min(max(random_k, 0), len(remainder))):
        selected.append(c.unit_id)
        chosen.add(c.unit_id)
        reasons.append(SelectionReason(
            unit_id=c.unit_id,
            reason="Random sample for unbiased coverage",
            category=SelectionCategory.RANDOM,
        ))

    specials = [c for c in ranked if c.is_special_case and c.unit_id not in chosen]
    for c in specials[:max(special_k, 0)]:
        selected.append(c.unit_id)
        chosen.add(c.unit_id)
        reasons.append(SelectionReason(
            unit_id=c.unit_id,
            reason=f"Special case ({c.special_case_kind or 'hotfix/revert'})",
            category=SelectionCategory.SPECIAL_CASE,
        ))

    logger.info(
        f"Sampled {len(selected)}/{len(ranked)} units "
        f"(top={top_k}, random={random_k}, special={special_k})"
    )
    return SamplingResult(
        selected_unit_ids=selected,
        selection_reasons=reasons,
        seed=seed,
        total_candidates=len(ranked),
        strategy={"top_k": top_k, "random_k": random_k, "special_k": special_k},
    )
