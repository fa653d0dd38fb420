"""
GATEFLOW — Capability Matcher
=============================
Scores (task, worker) pairs and picks the best worker for a node.

Score composition (clamped to [0, 1]):
1. Skill match ratio (40%): efficiency-weighted coverage of the task's
   required skills, plus partial credit for worker patterns and capability
   keywords found in the task text
2. Estimation confidence (25%): skill match scaled by experience tier
3. Domain efficiency (20%): mean efficiency across matched skills
4. Workload (10%): ``(max_concurrent - in_flight) / max_concurrent``
5. Priority alignment (5%): closeness of pattern priorities to the task's

Checkpoint-only workers short-circuit to 0 for ordinary development work.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from gateflow.core.logging import get_logger
from gateflow.orchestrator.models import Priority, TaskNode
from gateflow.workers.profiles import WorkerProfile

logger = get_logger(__name__)


# ── Weights ─────────────────────────────────────────────────────────────

SKILL_WEIGHT = 0.40
CONFIDENCE_WEIGHT = 0.25
DOMAIN_WEIGHT = 0.20
WORKLOAD_WEIGHT = 0.10
PRIORITY_WEIGHT = 0.05

KEYWORD_BONUS_FACTOR = 0.5
UNMATCHED_CONFIDENCE = 0.6
NEUTRAL_PRIORITY_ALIGNMENT = 0.5
_MAX_PRIORITY_GAP = Priority.CRITICAL.rank - Priority.LOW.rank


@dataclass(frozen=True, slots=True)
class SkillMatch:
    """Intermediate skill-match signal shared by several sub-scores."""

    eligible: bool
    ratio: float = 0.0
    matched_skills: tuple[str, ...] = ()
    matched_patterns: tuple[str, ...] = ()
    confidence: float = 0.0
    domain_efficiency: float = 0.0


@dataclass(frozen=True, slots=True)
class ScoreBreakdown:
    worker_id: str
    score: float
    skill_match: float = 0.0
    confidence: float = 0.0
    domain_efficiency: float = 0.0
    workload: float = 0.0
    priority_alignment: float = 0.0
    in_flight: int = 0
    eligible: bool = True


@dataclass(frozen=True)
class MatchResult:
    """Best worker (or ``None``) plus the full ranking."""

    node_id: str
    best: WorkerProfile | None
    ranked: list[ScoreBreakdown]
    justification: str

    @property
    def score(self) -> float:
        return self.ranked[0].score if self.ranked and self.best else 0.0


class CapabilityMatcher:
    """Stateless scorer; workload is passed in by the caller."""

    def skill_match(self, node: TaskNode, worker: WorkerProfile) -> SkillMatch:
        if not worker.accepts(node):
            return SkillMatch(eligible=False)

        total = 0.0
        maximum = 0.0
        matched: list[str] = []
        for skill in sorted(node.required_skills):
            maximum += 1.0
            capability = worker.capabilities.get(skill)
            if capability is not None:
                total += capability.efficiency
                matched.append(skill)

        text = f"{node.title} {node.description}"
        patterns: list[str] = []
        for pattern in worker.patterns:
            if pattern.matches(text):
                total += pattern.weight
                maximum += 1.0
                patterns.append(pattern.pattern)

        lowered = text.lower()
        for skill, capability in worker.capabilities.items():
            if skill in node.required_skills:
                continue
            if re.search(rf"\b{re.escape(skill.replace('_', ' '))}\b", lowered):
                total += capability.efficiency * KEYWORD_BONUS_FACTOR
                maximum += KEYWORD_BONUS_FACTOR

        ratio = min(1.0, total / maximum) if maximum else 0.0
        if matched:
            tiers = [worker.capabilities[s].experience.confidence for s in matched]
            confidence = ratio * (sum(tiers) / len(tiers))
            domain = sum(worker.capabilities[s].efficiency for s in matched) / len(matched)
        else:
            confidence = ratio * UNMATCHED_CONFIDENCE
            domain = 0.0
        return SkillMatch(
            eligible=True,
            ratio=ratio,
            matched_skills=tuple(matched),
            matched_patterns=tuple(patterns),
            confidence=confidence,
            domain_efficiency=domain,
        )

    def breakdown(
        self, node: TaskNode, worker: WorkerProfile, in_flight: int = 0
    ) -> ScoreBreakdown:
        match = self.skill_match(node, worker)
        if not match.eligible:
            return ScoreBreakdown(
                worker_id=worker.worker_id, score=0.0, in_flight=in_flight, eligible=False
            )

        free = max(0, worker.max_concurrent - in_flight)
        workload = free / worker.max_concurrent
        alignment = self._priority_alignment(node, worker, match)
        raw = (
            SKILL_WEIGHT * match.ratio
            + CONFIDENCE_WEIGHT * match.confidence
            + DOMAIN_WEIGHT * match.domain_efficiency
            + WORKLOAD_WEIGHT * workload
            + PRIORITY_WEIGHT * alignment
        )
        return ScoreBreakdown(
            worker_id=worker.worker_id,
            score=round(max(0.0, min(1.0, raw)), 6),
            skill_match=match.ratio,
            confidence=match.confidence,
            domain_efficiency=match.domain_efficiency,
            workload=workload,
            priority_alignment=alignment,
            in_flight=in_flight,
        )

    def score(self, node: TaskNode, worker: WorkerProfile, in_flight: int = 0) -> float:
        return self.breakdown(node, worker, in_flight).score

    def find_best(
        self,
        node: TaskNode,
        workers: Iterable[WorkerProfile],
        workload: Mapping[str, int] | None = None,
    ) -> MatchResult:
        """
        Rank every worker for ``node``.

        Ties are broken by lower in-flight count, then worker id.
        ``best`` is ``None`` when no worker scores above zero.
        """
        workload = workload or {}
        by_id = {w.worker_id: w for w in workers}
        ranked = sorted(
            (self.breakdown(node, w, workload.get(w.worker_id, 0)) for w in by_id.values()),
            key=lambda b: (-b.score, b.in_flight, b.worker_id),
        )
        best = by_id[ranked[0].worker_id] if ranked and ranked[0].score > 0 else None
        justification = self._justify(node, best, ranked)
        logger.debug(
            "matcher.ranked",
            node_id=node.id,
            best=None if best is None else best.worker_id,
            candidates=len(ranked),
        )
        return MatchResult(node_id=node.id, best=best, ranked=ranked, justification=justification)

    # ── Internals ───────────────────────────────────────────────────────

    @staticmethod
    def _priority_alignment(
        node: TaskNode, worker: WorkerProfile, match: SkillMatch
    ) -> float:
        if not worker.patterns:
            return NEUTRAL_PRIORITY_ALIGNMENT
        considered = [
            p for p in worker.patterns if p.pattern in match.matched_patterns
        ] or list(worker.patterns)
        gaps = [abs(p.priority.rank - node.priority.rank) for p in considered]
        return 1.0 - min(gaps) / _MAX_PRIORITY_GAP

    @staticmethod
    def _justify(
        node: TaskNode, best: WorkerProfile | None, ranked: list[ScoreBreakdown]
    ) -> str:
        if best is None:
            return f"No capable worker for '{node.id}'."
        top = ranked[0]
        parts = {
            "skill match": SKILL_WEIGHT * top.skill_match,
            "confidence": CONFIDENCE_WEIGHT * top.confidence,
            "domain efficiency": DOMAIN_WEIGHT * top.domain_efficiency,
            "workload": WORKLOAD_WEIGHT * top.workload,
            "priority alignment": PRIORITY_WEIGHT * top.priority_alignment,
        }
        drivers = sorted(parts.items(), key=lambda kv: kv[1], reverse=True)[:2]
        detail = ", ".join(f"{name} {value:.2f}" for name, value in drivers)
        runner_up = (
            f"; runner-up {ranked[1].worker_id} at {ranked[1].score:.2f}"
            if len(ranked) > 1
            else ""
        )
        return (
            f"{best.worker_id} scored {top.score:.2f} for '{node.id}' "
            f"driven by {detail}{runner_up}."
        )
