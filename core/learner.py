"""Learner that keeps score of which actions actually help.

After the Executor has verified an action, learn() folds its reward into the
ActionEffectiveness row for the action's signature and, when enabled, asks the
reasoning collaborator for a lesson summary. The Analyzer passes these rows
back to the collaborator during action selection so actions with a good track
record are preferred.

A signature identifies an action by what it did, not by its exact values:

    adjust_param:MAX_RETRIES:increase
    toggle_feature:ENABLE_AUTO_REFLECTION:false
    scale_resource:max_concurrent_requests:decrease
    restart_service:llm_client
    clear_cache:responses
    no_op
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from agents.base import ReasoningClient
from core.config import SelfImprovementConfig
from schemas.actions import (
    AdjustParam,
    ClearCache,
    NoOp,
    RestartService,
    ScaleResource,
    SuggestedAction,
    ToggleFeature,
    numeric,
)
from schemas.diagnosis import SelfDiagnosis
from schemas.result import ActionEffectiveness, ActionOutcome, ActionRecord, NormalizedReward

logger = logging.getLogger(__name__)

# Attempts needed before an effectiveness score is taken at face value.
CONFIDENT_ATTEMPTS = 10


class LearningBlockedReason(str, Enum):
    EXECUTION_NOT_COMPLETED = "execution_not_completed"
    INSUFFICIENT_SAMPLES = "insufficient_samples"


class LearningBlocked(Exception):
    def __init__(self, reason: LearningBlockedReason, message: str):
        super().__init__(message)
        self.reason = reason


@dataclass
class LearningOutcome:
    """What learn() produced for one action.

    Attributes:
        record: The action record, with lessons and completed_at filled in.
        effectiveness: The updated row for the action's signature.
        is_effective: Reward reached effective_reward_threshold.
        lessons: Lesson summary, or None when none could be obtained.
    """

    record: ActionRecord
    effectiveness: ActionEffectiveness
    is_effective: bool
    lessons: str | None = None


def signature(action: SuggestedAction) -> str:
    """Return the effectiveness key for an action."""
    if isinstance(action, AdjustParam):
        old, new = numeric(action.old_value), numeric(action.new_value)
        if old is None or new is None or old == new:
            direction = "change"
        else:
            direction = "increase" if new > old else "decrease"
        return f"adjust_param:{action.key}:{direction}"
    if isinstance(action, ToggleFeature):
        return f"toggle_feature:{action.feature_name}:{str(action.desired_state).lower()}"
    if isinstance(action, RestartService):
        return f"restart_service:{action.mode_name or action.component.value}"
    if isinstance(action, ClearCache):
        return f"clear_cache:{action.cache_name}"
    if isinstance(action, ScaleResource):
        direction = "increase" if action.new_value > action.old_value else "decrease"
        return f"scale_resource:{action.resource.value}:{direction}"
    if isinstance(action, NoOp):
        return "no_op"
    raise TypeError(f"Unknown action variant: {type(action).__name__}")


class Learner:
    """Maintains ActionEffectiveness and collects lessons.

    Attributes:
        config: Learner and reasoning sections are used.
        reasoner: Collaborator asked for lesson summaries.
    """

    def __init__(self, config: SelfImprovementConfig, reasoner: ReasoningClient) -> None:
        self.config = config
        self.reasoner = reasoner
        self._effectiveness: dict[str, ActionEffectiveness] = {}
        self._rewards: dict[str, deque[float]] = {}
        self._total_learned = 0
        self._lessons_obtained = 0
        self._last_learning_at: datetime | None = None

    async def learn(self, record: ActionRecord, diagnosis: SelfDiagnosis) -> LearningOutcome:
        """Fold a verified action into the effectiveness history.

        Args:
            record: A record the Executor has finished with.
            diagnosis: The diagnosis that proposed the action.

        Returns:
            A LearningOutcome with the updated row and any lessons.

        Raises:
            LearningBlocked: When the record is still PENDING or was scored on
                fewer than min_learning_samples post-action samples.
        """
        if record.outcome == ActionOutcome.PENDING:
            raise LearningBlocked(
                LearningBlockedReason.EXECUTION_NOT_COMPLETED,
                f"Execution not completed: {record.outcome.value}",
            )

        required = self.config.learner.min_learning_samples
        actual = record.metrics_after.sample_count if record.metrics_after else 0
        if record.reward is None or actual < required:
            raise LearningBlocked(
                LearningBlockedReason.INSUFFICIENT_SAMPLES,
                f"Insufficient samples: {actual} < {required}",
            )

        reward = record.reward
        is_effective = reward.value >= self.config.learner.effective_reward_threshold
        row = self._update(record, reward.value, is_effective)

        lessons = None
        if self.config.learner.use_reflection_for_learning:
            lessons = await self._synthesize(record, diagnosis, reward)

        self._total_learned += 1
        self._last_learning_at = datetime.now(timezone.utc)
        record = record.model_copy(update={
            "lessons": lessons,
            "completed_at": record.completed_at or self._last_learning_at,
        })

        logger.info(
            "Learned from %s: reward=%.3f effective=%s score=%.3f.",
            record.id,
            reward.value,
            is_effective,
            row.effectiveness_score,
        )
        return LearningOutcome(record=record, effectiveness=row, is_effective=is_effective, lessons=lessons)

    def effectiveness(self) -> list[ActionEffectiveness]:
        return sorted(self._effectiveness.values(), key=lambda e: e.effectiveness_score, reverse=True)

    def effectiveness_for(self, action: SuggestedAction) -> ActionEffectiveness | None:
        return self._effectiveness.get(signature(action))

    def restore(self, rows: list[ActionEffectiveness]) -> None:
        """Load persisted rows. In-memory reward history starts empty."""
        for row in rows:
            self._effectiveness[row.action_signature] = row
        logger.info("Restored %d effectiveness rows.", len(rows))

    def clear(self) -> None:
        self._effectiveness.clear()
        self._rewards.clear()

    def stats(self) -> dict:
        rows = self.effectiveness()
        scored = [r for r in rows if r.effectiveness_score > 0]
        return {
            "total_learned": self._total_learned,
            "lessons_obtained": self._lessons_obtained,
            "tracked_signatures": len(rows),
            "most_effective_action": rows[0].action_signature if rows else None,
            "least_effective_action": scored[-1].action_signature if scored else None,
            "last_learning_at": self._last_learning_at,
        }

    # ── Private helpers ───────────────────────────────────────────────────────

    def _update(self, record: ActionRecord, reward: float, is_effective: bool) -> ActionEffectiveness:
        sig = signature(record.action)
        row = self._effectiveness.get(sig) or ActionEffectiveness(
            action_type=record.action.type,
            action_signature=sig,
        )

        rewards = self._rewards.setdefault(sig, deque(maxlen=self.config.learner.max_history_per_action))
        if not rewards and row.total_attempts:
            # Seed from a persisted row so the average does not restart at zero.
            rewards.extend([row.avg_reward] * min(row.total_attempts, rewards.maxlen))
        rewards.append(reward)

        total = row.total_attempts + 1
        successful = row.successful_attempts + (1 if is_effective else 0)
        failed = row.failed_attempts + (1 if record.outcome == ActionOutcome.FAILED else 0)
        rolled_back = row.rolled_back_attempts + (1 if record.outcome == ActionOutcome.ROLLED_BACK else 0)
        avg = sum(rewards) / len(rewards)

        fresh = _effectiveness_score(successful / total, avg, total)
        score = fresh
        if row.total_attempts:
            weight = self.config.learner.history_weight
            score = weight * row.effectiveness_score + (1 - weight) * fresh

        row = row.model_copy(update={
            "total_attempts": total,
            "successful_attempts": successful,
            "failed_attempts": failed,
            "rolled_back_attempts": rolled_back,
            "avg_reward": avg,
            "min_reward": reward if row.min_reward is None else min(row.min_reward, reward),
            "max_reward": reward if row.max_reward is None else max(row.max_reward, reward),
            "effectiveness_score": score,
            "last_updated": datetime.now(timezone.utc),
        })
        self._effectiveness[sig] = row
        return row

    async def _synthesize(
        self,
        record: ActionRecord,
        diagnosis: SelfDiagnosis,
        reward: NormalizedReward,
    ) -> str | None:
        timeout = self.config.reasoning.learning_timeout_ms / 1000
        try:
            response = await asyncio.wait_for(
                self.reasoner.synthesize_learning(record, diagnosis, reward),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Lesson synthesis for %s timed out. No lesson stored.", record.id)
            return None
        except Exception as exc:
            logger.warning("Lesson synthesis for %s failed: %s. No lesson stored.", record.id, exc)
            return None

        if not response.lessons:
            return None
        self._lessons_obtained += 1
        return "; ".join(response.lessons)


def _effectiveness_score(success_rate: float, avg_reward: float, total: int) -> float:
    """Blend success rate with average reward, discounted until enough attempts."""
    normalized_reward = (avg_reward + 1.0) / 2.0
    raw = success_rate * 0.6 + normalized_reward * 0.4
    return raw * min(total / CONFIDENT_ATTEMPTS, 1.0)
