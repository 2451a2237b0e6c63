"""Result shapes for the staged AI review.

LLM output is untrusted: each ``normalize_stageN`` coerces a parsed JSON
dict into the stored shape, clamping scores and dropping junk, so
downstream consumers (stats, report) can rely on the keys existing.
"""

from typing import Any, Dict, List, Optional

WORK_STYLES = ("deep-diver", "multi-tasker", "firefighter", "architect")
COLLABORATION_PATTERNS = ("solo", "collaborative", "mentor", "learner")
PRIORITIES = ("high", "medium", "low")
ASSESSMENT_AREAS = ("productivity", "code_quality", "diversity", "collaboration", "growth")


class ReviewParseError(ValueError):
    """The completion could not be parsed into the expected shape."""


def _clamp_int(value: Any, low: int, high: int, default: int) -> int:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def _str_list(value: Any, limit: int = 10) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    items = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("text") or item.get("description") or item.get("item")
        if isinstance(item, str) and item.strip():
            items.append(item.strip())
    return items[:limit]


def _choice(value: Any, allowed, default: str) -> str:
    if isinstance(value, str) and value.strip().lower() in allowed:
        return value.strip().lower()
    return default


def _priority(value: Any) -> str:
    return _choice(value, PRIORITIES, "medium")


def normalize_stage1(data: Dict[str, Any]) -> Dict[str, Any]:
    """Per-unit code quality review."""
    quality = data.get("code_quality") or data.get("codeQuality") or {}
    if not isinstance(quality, dict):
        quality = {}
    return {
        "code_quality": {
            "score": _clamp_int(quality.get("score"), 1, 10, 5),
            "readability": _clamp_int(quality.get("readability"), 1, 10, 5),
            "maintainability": _clamp_int(quality.get("maintainability"), 1, 10, 5),
            "best_practices": _clamp_int(
                quality.get("best_practices", quality.get("bestPractices")), 1, 10, 5
            ),
        },
        "summary": str(data.get("summary") or "")[:1000],
        "strengths": _str_list(data.get("strengths")),
        "weaknesses": _str_list(data.get("weaknesses")),
        "code_patterns": _str_list(data.get("code_patterns", data.get("codePatterns"))),
        "suggestions": _str_list(data.get("suggestions")),
    }


def _typed_block(value: Any, allowed, default: str) -> Dict[str, str]:
    if isinstance(value, str):
        value = {"type": value}
    if not isinstance(value, dict):
        value = {}
    return {
        "type": _choice(value.get("type"), allowed, default),
        "description": str(value.get("description") or ""),
    }


def normalize_stage2(data: Dict[str, Any]) -> Dict[str, Any]:
    """Aggregate work-pattern analysis."""
    return {
        "work_style": _typed_block(data.get("work_style", data.get("workStyle")), WORK_STYLES, "multi-tasker"),
        "collaboration_pattern": _typed_block(
            data.get("collaboration_pattern", data.get("collaborationPattern")),
            COLLABORATION_PATTERNS, "solo",
        ),
        "productivity_insights": _str_list(data.get("productivity_insights", data.get("productivityInsights"))),
        "time_management_feedback": str(
            data.get("time_management_feedback", data.get("timeManagementFeedback")) or ""
        ),
    }


def normalize_stage3(data: Dict[str, Any]) -> Dict[str, Any]:
    """Growth and learning synthesis."""
    areas = []
    for area in data.get("areas_for_improvement", data.get("areasForImprovement")) or []:
        if not isinstance(area, dict) or not area.get("area"):
            continue
        areas.append({
            "area": str(area["area"]),
            "priority": _priority(area.get("priority")),
            "specific_feedback": str(area.get("specific_feedback", area.get("specificFeedback")) or ""),
            "suggested_resources": _str_list(
                area.get("suggested_resources", area.get("suggestedResources")), limit=5
            ),
        })
    return {
        "areas_for_improvement": areas[:8],
        "learning_opportunities": _str_list(data.get("learning_opportunities", data.get("learningOpportunities"))),
        "strengths": _str_list(data.get("strengths")),
        "career_growth_suggestions": _str_list(
            data.get("career_growth_suggestions", data.get("careerGrowthSuggestions"))
        ),
    }


def normalize_stage4(data: Dict[str, Any]) -> Dict[str, Any]:
    """Executive synthesis."""
    raw_assessment = data.get("overall_assessment", data.get("overallAssessment")) or {}
    if not isinstance(raw_assessment, dict):
        raw_assessment = {}
    camel = {"code_quality": "codeQuality"}
    assessment = {}
    for area in ASSESSMENT_AREAS:
        block = raw_assessment.get(area, raw_assessment.get(camel.get(area, area))) or {}
        if not isinstance(block, dict):
            block = {"score": block}
        assessment[area] = {
            "score": _clamp_int(block.get("score"), 1, 10, 5),
            "feedback": str(block.get("feedback") or ""),
        }

    action_items = []
    for item in data.get("action_items", data.get("actionItems")) or []:
        if isinstance(item, str):
            item = {"item": item}
        if not isinstance(item, dict) or not item.get("item"):
            continue
        action_items.append({
            "item": str(item["item"]),
            "deadline": str(item.get("deadline") or ""),
            "priority": _priority(item.get("priority")),
        })

    return {
        "executive_summary": str(data.get("executive_summary", data.get("executiveSummary")) or ""),
        "overall_assessment": assessment,
        "top_achievements": _str_list(data.get("top_achievements", data.get("topAchievements"))),
        "key_improvements": _str_list(data.get("key_improvements", data.get("keyImprovements"))),
        "action_items": action_items[:10],
    }


NORMALIZERS = {
    1: normalize_stage1,
    2: normalize_stage2,
    3: normalize_stage3,
    4: normalize_stage4,
}


def normalize(stage: int, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ReviewParseError(f"Stage {stage} output is not a JSON object")
    return NORMALIZERS[stage](data)
