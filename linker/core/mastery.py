"""
Mastery Engine.

Maps a stream of correctness events to mastery score, tier and next review
date for a knowledge point.

Design:
- MasteryTier: Enum for categorizing 0-5 mastery levels
- Severity: How bad a mistake was, scales the mastery penalty
- MasteryEngine: Pure state transition (point, outcome, now) -> point
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from .models import KnowledgePoint

MIN_MASTERY = 0.0
MAX_MASTERY = 5.0


class MasteryTier(str, Enum):
    """
    Mastery tier on the 0-5 scale.

    weak = [0, 1.5), medium = [1.5, 3.5), strong = [3.5, 5]
    """

    WEAK = "weak"
    MEDIUM = "medium"
    STRONG = "strong"

    @classmethod
    def from_level(cls, level: float) -> MasteryTier:
        """
        Convert a 0-5 mastery level to a tier.

        Args:
            level: Mastery level, clamped into range first

        Returns:
            Corresponding MasteryTier
        """
        level = clamp_mastery(level)
        if level < 1.5:
            return cls.WEAK
        elif level < 3.5:
            return cls.MEDIUM
        else:
            return cls.STRONG

    @property
    def display_name(self) -> str:
        """Human-readable name."""
        return self.value.title()

    @property
    def color(self) -> str:
        """Rich color for CLI display."""
        return {
            MasteryTier.WEAK: "red",
            MasteryTier.MEDIUM: "yellow",
            MasteryTier.STRONG: "green",
        }[self]


class Severity(str, Enum):
    """Mistake severity as reported by the grading backend."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def penalty(self) -> float:
        """Mastery lost for an incorrect answer of this severity."""
        return {
            Severity.LOW: 0.25,
            Severity.MEDIUM: 0.5,
            Severity.HIGH: 0.75,
            Severity.CRITICAL: 1.0,
        }[self]

    @classmethod
    def parse(cls, value: str | Severity | None) -> Severity | None:
        """Lenient parse; unknown labels are treated as missing."""
        if value is None or isinstance(value, Severity):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


def clamp_mastery(level: float) -> float:
    """Force ``level`` into [0, 5]; NaN and infinities count as 0."""
    if not math.isfinite(level):
        return MIN_MASTERY
    return max(MIN_MASTERY, min(MAX_MASTERY, level))


@dataclass(frozen=True)
class Outcome:
    """One answer to a review question."""

    was_correct: bool
    severity: Severity | None = None


class MasteryEngine:
    """
    Spaced-repetition state machine over the 0-5 mastery scale.

    Correct answers raise mastery and double the review interval for every
    consecutive correct answer (1, 2, 4, 8... days, capped). Incorrect
    answers lower mastery by the severity penalty and reset the streak,
    scheduling the point again within hours (Leitner demotion).
    """

    def __init__(
        self,
        correct_gain: float = 0.5,
        base_interval_days: float = 1.0,
        max_interval_days: float = 180.0,
        relearn_interval_hours: float = 4.0,
    ):
        """
        Initialize the engine.

        Args:
            correct_gain: Mastery added per correct answer
            base_interval_days: Interval after the first correct answer
            max_interval_days: Upper bound for the interval
            relearn_interval_hours: Delay before re-review after a mistake
        """
        self.correct_gain = correct_gain
        self.base_interval_days = base_interval_days
        self.max_interval_days = max_interval_days
        self.relearn_interval_hours = relearn_interval_hours

    def review_interval(self, streak: int) -> timedelta:
        """Interval after ``streak`` consecutive correct answers (streak >= 1)."""
        exponent = max(streak, 1) - 1
        # Cap the exponent before pow to keep long streaks from overflowing.
        if exponent > 64:
            days = self.max_interval_days
        else:
            days = min(self.base_interval_days * (2 ** exponent), self.max_interval_days)
        return timedelta(days=days)

    def apply_outcome(
        self,
        point: KnowledgePoint,
        was_correct: bool,
        severity: Severity | str | None = None,
        now: datetime | None = None,
    ) -> KnowledgePoint:
        """
        Apply one answer to ``point``.

        Args:
            point: Current state
            was_correct: Whether the learner answered correctly
            severity: Mistake severity, ignored for correct answers
            now: Evaluation time (defaults to UTC now, read once)

        Returns:
            Updated copy of the point
        """
        if now is None:
            now = datetime.now(UTC)
        current = clamp_mastery(point.mastery_level)

        if was_correct:
            streak = point.consecutive_correct + 1
            return point.with_changes(
                mastery_level=clamp_mastery(current + self.correct_gain),
                correct_count=point.correct_count + 1,
                consecutive_correct=streak,
                next_review_date=now + self.review_interval(streak),
                updated_at=now,
            )

        penalty = (Severity.parse(severity) or Severity.MEDIUM).penalty
        return point.with_changes(
            mastery_level=clamp_mastery(current - penalty),
            mistake_count=point.mistake_count + 1,
            consecutive_correct=0,
            next_review_date=now + timedelta(hours=self.relearn_interval_hours),
            updated_at=now,
        )

    def apply(self, point: KnowledgePoint, outcome: Outcome, now: datetime | None = None) -> KnowledgePoint:
        return self.apply_outcome(point, outcome.was_correct, outcome.severity, now=now)

    @staticmethod
    def is_due(point: KnowledgePoint, now: datetime | None = None) -> bool:
        """A point is due when unscheduled or scheduled at or before ``now``."""
        if point.next_review_date is None:
            return True
        if now is None:
            now = datetime.now(UTC)
        return point.next_review_date <= now

    def due_points(
        self, points: Iterable[KnowledgePoint], now: datetime | None = None
    ) -> list[KnowledgePoint]:
        """Unarchived points due for review, weakest first."""
        if now is None:
            now = datetime.now(UTC)
        due = [p for p in points if not p.is_archived and self.is_due(p, now)]
        return sorted(due, key=lambda p: clamp_mastery(p.mastery_level))
