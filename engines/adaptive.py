"""Adaptive difficulty engine with ping-pong suppression.

Difficulty moves one level at a time and only when two signals agree:

* a hysteresis counter (``CONSECUTIVE_THRESHOLD`` same-direction answers in
  a row, symmetric for up and down), and
* a momentum accumulator that is first nudged by ``MOMENTUM_GAIN`` and then
  decayed by ``MOMENTUM_DECAY`` on every answer, and must cross ``+1.0`` to
  go up or ``-1.0`` to go down.

After a change both the momentum and the triggering counter reset to zero,
so a level has to be re-earned before the next move. Two correct answers in
a row from a neutral state are exactly enough::

    (0.00 + 1.5) * 0.7 = 1.050   consecutive=1  -> stay
    (1.05 + 1.5) * 0.7 = 1.785   consecutive=2  -> level + 1

The engine is a pure function of its inputs: no I/O, no randomness and no
shared mutable state, so it is safe to call from any thread.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import List, Optional

MIN_DIFFICULTY = 1
MAX_DIFFICULTY = 10
DEFAULT_DIFFICULTY = 5

CONSECUTIVE_THRESHOLD = 2
MOMENTUM_GAIN = 1.5
MOMENTUM_DECAY = 0.3
MOMENTUM_LIMIT = 3.0
INCREASE_THRESHOLD = 1.0
DECREASE_THRESHOLD = -1.0

BASE_SCORE_MULTIPLIER = 10.0
DIFFICULTY_WEIGHT = 1.5
STREAK_MULTIPLIER_RATE = 0.1
MAX_STREAK_MULTIPLIER = 3.0
ACCURACY_BONUS_THRESHOLD = 0.8
ACCURACY_BONUS = 1.2

STREAK_DECAY_AFTER = timedelta(hours=24)


@dataclass
class UserState:
    """Running performance state of one user."""

    user_id: str
    difficulty: int = DEFAULT_DIFFICULTY
    streak: int = 0
    max_streak: int = 0
    total_score: float = 0.0
    total_questions: int = 0
    correct_answers: int = 0
    momentum: float = 0.0
    consecutive_correct: int = 0
    consecutive_wrong: int = 0
    last_question_id: Optional[str] = None
    version: int = 0
    last_answer_at: Optional[datetime] = None

    @property
    def accuracy(self) -> float:
        """Share of correct answers so far (0.0 when nothing was answered)."""
        if self.total_questions <= 0:
            return 0.0
        return self.correct_answers / self.total_questions

    def with_streak_reset(self) -> "UserState":
        return replace(self, streak=0)


@dataclass(frozen=True)
class Transition:
    """Outcome of applying one answer to a :class:`UserState`."""

    new_difficulty: int
    new_streak: int
    new_momentum: float
    new_consecutive_correct: int
    new_consecutive_wrong: int
    score_delta: float


def clamp_difficulty(value: float) -> int:
    return int(max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, int(round(value)))))


def clamp_momentum(value: float) -> float:
    return max(-MOMENTUM_LIMIT, min(MOMENTUM_LIMIT, float(value)))


def _round2(value: float) -> float:
    # Half away from zero, matching how scores were always rounded.
    return math.floor(value * 100 + 0.5) / 100


def calculate_streak_multiplier(streak: int) -> float:
    """Return ``1 + 0.1 * streak`` capped at ``MAX_STREAK_MULTIPLIER``.

    >>> calculate_streak_multiplier(0), calculate_streak_multiplier(5), calculate_streak_multiplier(20)
    (1.0, 1.5, 3.0)
    """
    multiplier = 1.0 + max(0, streak) * STREAK_MULTIPLIER_RATE
    return min(multiplier, MAX_STREAK_MULTIPLIER)


def calculate_score_delta(difficulty: int, new_streak: int, is_correct: bool, accuracy: float) -> float:
    """Points awarded for one answer.

    ``new_streak`` is the streak *including* this answer, so a correct answer
    immediately benefits from the streak it just extended.
    """
    if not is_correct:
        return 0.0
    base = BASE_SCORE_MULTIPLIER * math.pow(clamp_difficulty(difficulty), DIFFICULTY_WEIGHT)
    bonus = ACCURACY_BONUS if accuracy > ACCURACY_BONUS_THRESHOLD else 1.0
    return _round2(base * calculate_streak_multiplier(new_streak) * bonus)


def running_accuracy(state: UserState) -> float:
    """Accuracy used for the score bonus; a fresh user counts as perfect."""
    if state.total_questions <= 0:
        return 1.0
    return state.correct_answers / state.total_questions


class AdaptiveEngine:
    """Stateless difficulty controller.

    Parameters
    ----------
    consecutive_threshold:
        Same-direction answers required before a level change, in either
        direction.
    momentum_gain:
        Amount added (correct) or subtracted (wrong) before decay.
    momentum_decay:
        Fraction of momentum removed on every answer, applied after the gain.
    """

    def __init__(
        self,
        consecutive_threshold: int = CONSECUTIVE_THRESHOLD,
        momentum_gain: float = MOMENTUM_GAIN,
        momentum_decay: float = MOMENTUM_DECAY,
        increase_threshold: float = INCREASE_THRESHOLD,
        decrease_threshold: float = DECREASE_THRESHOLD,
    ) -> None:
        if consecutive_threshold <= 0:
            raise ValueError("consecutive_threshold must be positive")
        if not 0.0 <= momentum_decay < 1.0:
            raise ValueError("momentum_decay must be in [0, 1)")
        if decrease_threshold >= increase_threshold:
            raise ValueError("decrease_threshold must be lower than increase_threshold")

        self.consecutive_threshold = int(consecutive_threshold)
        self.momentum_gain = float(momentum_gain)
        self.momentum_decay = float(momentum_decay)
        self.increase_threshold = float(increase_threshold)
        self.decrease_threshold = float(decrease_threshold)

    def transition(self, state: UserState, is_correct: bool, question_difficulty: int) -> Transition:
        """Apply one answer to ``state``.

        The level that moves is always the user's own ``state.difficulty``;
        ``question_difficulty`` only weights the score.
        """
        level = clamp_difficulty(state.difficulty)
        momentum = clamp_momentum(state.momentum)
        consecutive_correct = max(0, int(state.consecutive_correct))
        consecutive_wrong = max(0, int(state.consecutive_wrong))
        retain = 1.0 - self.momentum_decay

        if is_correct:
            new_streak = max(0, int(state.streak)) + 1
            consecutive_correct += 1
            consecutive_wrong = 0
            momentum = (momentum + self.momentum_gain) * retain
            if (
                consecutive_correct >= self.consecutive_threshold
                and momentum >= self.increase_threshold
                and level < MAX_DIFFICULTY
            ):
                level += 1
                momentum = 0.0
                consecutive_correct = 0
        else:
            new_streak = 0
            consecutive_wrong += 1
            consecutive_correct = 0
            momentum = (momentum - self.momentum_gain) * retain
            if (
                consecutive_wrong >= self.consecutive_threshold
                and momentum <= self.decrease_threshold
                and level > MIN_DIFFICULTY
            ):
                level -= 1
                momentum = 0.0
                consecutive_wrong = 0

        return Transition(
            new_difficulty=clamp_difficulty(level),
            new_streak=new_streak,
            new_momentum=clamp_momentum(momentum),
            new_consecutive_correct=consecutive_correct,
            new_consecutive_wrong=consecutive_wrong,
            score_delta=calculate_score_delta(
                question_difficulty, new_streak, is_correct, running_accuracy(state)
            ),
        )


_DEFAULT_ENGINE = AdaptiveEngine()


def transition(state: UserState, is_correct: bool, question_difficulty: int) -> Transition:
    """Apply one answer with the canonical constants."""
    return _DEFAULT_ENGINE.transition(state, is_correct, question_difficulty)


def should_decay_streak(last_answer_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when strictly more than 24 hours passed since the last answer."""
    if last_answer_at is None:
        return False
    current = now or datetime.now(timezone.utc)
    if last_answer_at.tzinfo is None:
        last_answer_at = last_answer_at.replace(tzinfo=timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current - last_answer_at > STREAK_DECAY_AFTER


def get_difficulty_range(difficulty: int) -> List[int]:
    """Candidate question levels around ``difficulty``: ``d-1..d+1`` within bounds."""
    level = clamp_difficulty(difficulty)
    return [
        candidate
        for candidate in (level - 1, level, level + 1)
        if MIN_DIFFICULTY <= candidate <= MAX_DIFFICULTY
    ]
