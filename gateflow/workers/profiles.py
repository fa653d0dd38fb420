"""
GATEFLOW — Worker Capability Profiles
=====================================
What each worker can do: skill efficiencies with an experience tier,
a concurrency limit, and title/description patterns that recognise suitable
tasks regardless of explicit skill tags.

``default_profiles()`` returns the four built-in specialists. Two of them
(code review, QA testing) are checkpoint-only and are never matched to
ordinary development work.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum

from gateflow.orchestrator.models import Priority, TaskNode


class Experience(StrEnum):
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"

    @property
    def confidence(self) -> float:
        """Estimation confidence contributed by this tier."""
        return _EXPERIENCE_CONFIDENCE[self]


_EXPERIENCE_CONFIDENCE: dict[Experience, float] = {
    Experience.INTERMEDIATE: 0.7,
    Experience.ADVANCED: 0.85,
    Experience.EXPERT: 1.0,
}


@dataclass(frozen=True, slots=True)
class SkillCapability:
    efficiency: float
    experience: Experience = Experience.INTERMEDIATE

    def __post_init__(self) -> None:
        if not 0.0 <= self.efficiency <= 1.0:
            raise ValueError(f"efficiency must be within [0, 1], got {self.efficiency}")


@dataclass(frozen=True, slots=True)
class TaskPattern:
    """Regex over task title + description with priority and effort hints."""

    pattern: str
    priority: Priority = Priority.MEDIUM
    estimated_hours: float = 2.0
    weight: float = 0.8

    def matches(self, text: str) -> bool:
        return re.search(self.pattern, text, re.IGNORECASE) is not None


@dataclass(frozen=True)
class WorkerProfile:
    worker_id: str
    specialization: str
    capabilities: dict[str, SkillCapability] = field(default_factory=dict)
    max_concurrent: int = 3
    patterns: tuple[TaskPattern, ...] = ()
    checkpoint_only: bool = False
    # Titles a checkpoint-only worker accepts on non-checkpoint tasks
    eligible_title_patterns: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

    def accepts(self, node: TaskNode) -> bool:
        """Specialization guard for checkpoint-only workers."""
        if not self.checkpoint_only or node.is_checkpoint:
            return True
        return any(
            re.search(p, node.title.strip(), re.IGNORECASE)
            for p in self.eligible_title_patterns
        )

    def effort_hint(self, node: TaskNode) -> float:
        """Hours suggested by the patterns this node's text matches, summed."""
        text = f"{node.title} {node.description}"
        return sum(p.estimated_hours for p in self.patterns if p.matches(text))


# ── Built-in specialists ────────────────────────────────────────────────


def _cap(efficiency: float, experience: Experience) -> SkillCapability:
    return SkillCapability(efficiency, experience)


TESTING_TITLE_PATTERNS: tuple[str, ...] = (
    r"^testing\b",
    r"^qa\s+testing\b",
    r"^quality\s+assurance\b",
    r"^test\s+automation\b",
    r"^unit\s+test",
    r"^integration\s+test",
    r"^e2e\s+test",
    r"^end.to.end\s+test",
)

REVIEW_TITLE_PATTERNS: tuple[str, ...] = (
    r"^code\s+review\b",
    r"^review\b",
    r"^security\s+review\b",
    r"^audit\b",
)


def default_profiles() -> list[WorkerProfile]:
    """Frontend, backend, code-review and QA specialists."""
    expert, advanced, intermediate = (
        Experience.EXPERT,
        Experience.ADVANCED,
        Experience.INTERMEDIATE,
    )
    return [
        WorkerProfile(
            worker_id="react_frontend_specialist",
            specialization="React frontend development",
            capabilities={
                "react": _cap(0.95, expert),
                "javascript": _cap(0.9, expert),
                "typescript": _cap(0.85, advanced),
                "css": _cap(0.85, advanced),
                "html": _cap(0.9, expert),
                "frontend": _cap(0.9, expert),
                "ui": _cap(0.8, advanced),
                "testing": _cap(0.6, intermediate),
            },
            patterns=(
                TaskPattern(r"\b(component|form|page|layout)\b", Priority.MEDIUM, 3.0),
                TaskPattern(r"\b(react|jsx|tsx|hooks?)\b", Priority.HIGH, 4.0),
                TaskPattern(r"\b(style|css|responsive|ui)\b", Priority.LOW, 2.0),
            ),
        ),
        WorkerProfile(
            worker_id="python_backend_specialist",
            specialization="Python backend development",
            capabilities={
                "python": _cap(0.95, expert),
                "backend": _cap(0.9, expert),
                "api": _cap(0.9, expert),
                "database": _cap(0.85, advanced),
                "sql": _cap(0.8, advanced),
                "fastapi": _cap(0.85, advanced),
                "django": _cap(0.75, advanced),
                "testing": _cap(0.65, intermediate),
            },
            patterns=(
                TaskPattern(r"\b(api|endpoint|rest|graphql)\b", Priority.HIGH, 4.0),
                TaskPattern(r"\b(database|schema|migration|model)\b", Priority.HIGH, 3.0),
                TaskPattern(r"\b(auth|authentication|server)\b", Priority.CRITICAL, 5.0),
            ),
        ),
        WorkerProfile(
            worker_id="code_review_specialist",
            specialization="Code review and static analysis",
            capabilities={
                "code_review": _cap(0.95, expert),
                "security": _cap(0.85, advanced),
                "refactoring": _cap(0.8, advanced),
                "best_practices": _cap(0.9, expert),
            },
            patterns=(
                TaskPattern(r"\b(code\s+review|review)\b", Priority.HIGH, 1.0, weight=0.9),
                TaskPattern(r"\b(security|vulnerabilit\w*|audit)\b", Priority.CRITICAL, 2.0, weight=0.9),
            ),
            checkpoint_only=True,
            eligible_title_patterns=REVIEW_TITLE_PATTERNS,
        ),
        WorkerProfile(
            worker_id="qa_testing_specialist",
            specialization="Quality assurance and test automation",
            capabilities={
                "testing": _cap(0.95, expert),
                "quality_assurance": _cap(0.95, expert),
                "test_automation": _cap(0.9, expert),
                "e2e": _cap(0.85, advanced),
                "performance": _cap(0.7, intermediate),
            },
            patterns=(
                TaskPattern(r"\b(qa|test(s|ing)?|verify|verification)\b", Priority.HIGH, 2.0),
                TaskPattern(r"\b(build|runtime|coverage)\b", Priority.MEDIUM, 1.0),
            ),
            checkpoint_only=True,
            eligible_title_patterns=TESTING_TITLE_PATTERNS,
        ),
    ]
