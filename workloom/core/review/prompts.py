"""Prompt templates for the staged AI review.

Four templates, one per LLM stage:
1. build_code_review_prompt - per sampled unit, diff + commit context
2. build_work_pattern_prompt - aggregate over stage 1 results and metrics
3. build_growth_prompt - growth areas built on stage 2
4. build_executive_prompt - final synthesis of everything

All prompts demand a single JSON object; the engine strips fences.
"""

import json
from typing import Any, Dict, List, Optional

from ..constants import PROMPT_VERSION

SYSTEM_PREAMBLE = (
    "You are a senior engineering manager writing a fair, evidence-based "
    "yearly review. Base every statement on the data provided. "
    "Respond with a single JSON object and nothing else."
)


def _standards_section(team_standards: str) -> str:
    if not team_standards.strip():
        return ""
    return f"\n## TEAM STANDARDS\n{team_standards.strip()}\n"


def _compact(data: Any, limit: int = 6000) -> str:
    text = json.dumps(data, ensure_ascii=False, default=str, indent=1)
    if len(text) > limit:
        text = text[:limit] + "\n... [truncated]"
    return text


def build_code_review_prompt(
    unit: Dict[str, Any],
    diff_text: str,
    diff_is_partial: bool,
    team_standards: str = "",
) -> str:
    """Stage 1: review one work unit's code changes.

    Args:
        unit: WorkUnit summary dict (repo, work_type, title, commits, impact)
        diff_text: unified diff for the unit's commits (may be truncated)
        diff_is_partial: True when some commits have no diff available
        team_standards: organization coding standards, if any
    """
    commit_lines = "\n".join(
        f"- {c['sha'][:8]} {c['committed_at']} +{c['additions']}/-{c['deletions']} {c['message'].splitlines()[0] if c['message'] else ''}"
        for c in unit.get("commits", [])
    )
    partial_notice = ""
    if diff_is_partial:
        partial_notice = (
            "\nNOTE: Some diffs could not be retrieved or were truncated. "
            "Judge only what is shown and lower confidence accordingly.\n"
        )

    return f"""{SYSTEM_PREAMBLE}

## WORK UNIT
Repository: {unit['repo_name']}
Type: {unit['work_type']}
Title: {unit.get('title') or ''}
Period: {unit['start_at']} .. {unit['end_at']}
Impact score: {unit.get('impact_score')}
Impact factors: {_compact(unit.get('impact_factors') or {}, 1500)}

## COMMITS
{commit_lines}
{_standards_section(team_standards)}{partial_notice}
## DIFF
{diff_text or '(no diff available)'}

## TASK
Review the code quality of this work unit. Return JSON:
{{
  "summary": "one or two sentences describing what this unit accomplished",
  "code_quality": {{"score": 1-10, "readability": 1-10, "maintainability": 1-10, "best_practices": 1-10}},
  "strengths": ["..."],
  "weaknesses": ["..."],
  "code_patterns": ["..."],
  "suggestions": ["..."]
}}
(prompt {PROMPT_VERSION})"""


def build_work_pattern_prompt(
    metrics: Dict[str, Any],
    unit_reviews: List[Dict[str, Any]],
    units_overview: List[Dict[str, Any]],
) -> str:
    """Stage 2: aggregate work-pattern analysis across the year."""
    return f"""{SYSTEM_PREAMBLE}

## DEVELOPER METRICS
{_compact(metrics)}

## WORK UNITS (ranked by impact)
{_compact(units_overview, 4000)}

## SAMPLED UNIT REVIEWS ({len(unit_reviews)})
{_compact(unit_reviews, 8000)}

## TASK
Characterize how this developer works. Return JSON:
{{
  "work_style": {{"type": "deep-diver|multi-tasker|firefighter|architect", "description": "..."}},
  "collaboration_pattern": {{"type": "solo|collaborative|mentor|learner", "description": "..."}},
  "productivity_insights": ["..."],
  "time_management_feedback": "..."
}}
(prompt {PROMPT_VERSION})"""


def build_growth_prompt(
    metrics: Dict[str, Any],
    work_pattern: Optional[Dict[str, Any]],
    unit_reviews: List[Dict[str, Any]],
) -> str:
    """Stage 3: growth areas and learning opportunities."""
    return f"""{SYSTEM_PREAMBLE}

## DEVELOPER METRICS
{_compact(metrics, 3000)}

## WORK PATTERN ANALYSIS
{_compact(work_pattern or {"unavailable": True}, 3000)}

## SAMPLED UNIT REVIEWS ({len(unit_reviews)})
{_compact(unit_reviews, 6000)}

## TASK
Identify growth areas. Return JSON:
{{
  "areas_for_improvement": [{{"area": "...", "priority": "high|medium|low", "specific_feedback": "...", "suggested_resources": ["..."]}}],
  "learning_opportunities": ["..."],
  "strengths": ["..."],
  "career_growth_suggestions": ["..."]
}}
(prompt {PROMPT_VERSION})"""


def build_executive_prompt(
    metrics: Dict[str, Any],
    unit_reviews: List[Dict[str, Any]],
    work_pattern: Optional[Dict[str, Any]],
    growth: Optional[Dict[str, Any]],
    stats: Dict[str, Any],
) -> str:
    """Stage 4: executive summary combining every prior stage."""
    return f"""{SYSTEM_PREAMBLE}

## YEAR STATS
{_compact(stats, 2000)}

## DEVELOPER METRICS
{_compact(metrics, 3000)}

## SAMPLED UNIT REVIEWS ({len(unit_reviews)})
{_compact(unit_reviews, 4000)}

## WORK PATTERN ANALYSIS
{_compact(work_pattern or {"unavailable": True}, 2000)}

## GROWTH ANALYSIS
{_compact(growth or {"unavailable": True}, 2000)}

## TASK
Write the executive synthesis for the yearly review. Return JSON:
{{
  "executive_summary": "3-5 sentences",
  "overall_assessment": {{
    "productivity": {{"score": 1-10, "feedback": "..."}},
    "code_quality": {{"score": 1-10, "feedback": "..."}},
    "diversity": {{"score": 1-10, "feedback": "..."}},
    "collaboration": {{"score": 1-10, "feedback": "..."}},
    "growth": {{"score": 1-10, "feedback": "..."}}
  }},
  "top_achievements": ["..."],
  "key_improvements": ["..."],
  "action_items": [{{"item": "...", "deadline": "...", "priority": "high|medium|low"}}]
}}
(prompt {PROMPT_VERSION})"""
