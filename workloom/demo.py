"""Self-contained demo data: the "alice" 2024 scenario.

40 commits by alice across two repositories; the second burst starts
three days after the first, yielding two work units, both sampled.
Used by ``python -m workloom demo`` and by the end-to-end tests.
"""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, Generator, List, Tuple

from llama_index.core.base.llms.types import CompletionResponse, LLMMetadata
from llama_index.core.llms import CustomLLM

from .core.analysis.models import CommitRecord, FilePatch

DEMO_ORG = "acme"
DEMO_USER = "alice"
DEMO_YEAR = 2024

_BURSTS = (
    ("acme/api", datetime(2024, 3, 4, 9, 0), "feat(auth): token refresh step", "src/auth"),
    ("acme/web", datetime(2024, 3, 7, 9, 0), "feat(ui): settings page step", "src/settings"),
)


def alice_commits(per_repo: int = 20, spacing_minutes: int = 15) -> List[CommitRecord]:
    """Two rapid-fire bursts, one per repo, three days apart."""
    commits = []
    for repo, start, message, folder in _BURSTS:
        for i in range(per_repo):
            commits.append(CommitRecord(
                sha=f"{repo.split('/')[1]}{i:036d}",
                author_login=DEMO_USER,
                committed_at=start + timedelta(minutes=spacing_minutes * i),
                repo_name=repo,
                message=f"{message} {i + 1}",
                additions=10 + i,
                deletions=2,
                files=[
                    {"path": f"{folder}/module_{i % 3}.py", "additions": 8 + i, "deletions": 2},
                    {"path": f"tests/{folder.split('/')[-1]}/test_module_{i % 3}.py",
                     "additions": 2, "deletions": 0},
                ],
            ))
    return commits


def alice_patches(commits: List[CommitRecord]) -> Dict[Tuple[str, str], List[FilePatch]]:
    return {
        (c.repo_name, c.sha): [
            FilePatch(
                path=f.path,
                patch=f"@@ -1,1 +1,{f.additions} @@\n+# {c.message}\n",
                additions=f.additions,
                deletions=f.deletions,
            )
            for f in c.files
        ]
        for c in commits
    }


DEMO_REVIEW = {
    "code_quality": {"score": 8, "readability": 8, "maintainability": 7, "best_practices": 8},
    "summary": "Incremental, well-tested feature work.",
    "strengths": ["Small focused commits", "Tests accompany changes"],
    "weaknesses": ["Limited documentation"],
    "suggestions": ["Document public interfaces"],
    "work_style": {"type": "deep-diver", "description": "Works in focused bursts"},
    "collaboration_pattern": {"type": "solo", "description": "Mostly independent work"},
    "productivity_insights": ["Concentrated delivery windows"],
    "time_management_feedback": "Consistent daytime sessions.",
    "areas_for_improvement": [
        {"area": "Documentation", "priority": "medium", "specific_feedback": "Add module docs"},
    ],
    "learning_opportunities": ["API design reviews"],
    "career_growth_suggestions": ["Lead a cross-repo feature"],
    "overall_assessment": {
        "productivity": {"score": 7, "feedback": "Steady output"},
        "code_quality": {"score": 8, "feedback": "Clean changes"},
        "diversity": {"score": 6, "feedback": "Two repositories"},
        "collaboration": {"score": 5, "feedback": "Limited signal"},
        "growth": {"score": 7, "feedback": "Clear trajectory"},
    },
    "top_achievements": ["Token refresh flow", "Settings page"],
    "key_improvements": ["Documentation"],
    "action_items": [{"item": "Write auth module docs", "deadline": "Q1", "priority": "medium"}],
}


class DemoReviewLLM(CustomLLM):
    """Offline LLM returning a fixed review covering every stage's keys."""

    @property
    def metadata(self) -> LLMMetadata:
        return LLMMetadata(model_name="demo-review")

    def complete(self, prompt: str, formatted: bool = False, **kwargs: Any) -> CompletionResponse:
        return CompletionResponse(text=f"```json\n{json.dumps(DEMO_REVIEW)}\n```")

    def stream_complete(
        self, prompt: str, formatted: bool = False, **kwargs: Any
    ) -> Generator[CompletionResponse, None, None]:
        response = self.complete(prompt, formatted=formatted, **kwargs)
        yield CompletionResponse(text=response.text, delta=response.text)

    @classmethod
    def class_name(cls) -> str:
        return "DemoReviewLLM"
