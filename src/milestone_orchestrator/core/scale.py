"""Decides when the active storage tier should be upgraded."""

import logging

from milestone_orchestrator.config import Config
from milestone_orchestrator.db.models import TIERS

logger = logging.getLogger(__name__)


class ScaleDetector:
    """Recommends tier upgrades from milestone counts and query latency.

    A recommendation must repeat for ``migration_hysteresis_samples``
    consecutive samples before ``sample`` returns it. Only upgrades are
    recommended; moving down a tier is an operator decision.
    """

    def __init__(self, config: Config):
        self.thresholds = config.tier_thresholds
        self.hysteresis = config.migration_hysteresis_samples
        self.latency_threshold_ms = config.latency_threshold_ms
        self._candidate: str | None = None
        self._streak = 0

    def tier_for(self, active_milestones: int) -> str:
        if active_milestones >= self.thresholds.database:
            return "database"
        if active_milestones >= self.thresholds.hybrid:
            return "hybrid"
        return "flat"

    def recommend(self, current_tier: str, active_milestones: int, latency_ms: float | None = None) -> str | None:
        """The upgrade one sample suggests, ignoring hysteresis."""
        rank = TIERS.index(current_tier)
        wanted = TIERS.index(self.tier_for(active_milestones))
        if latency_ms is not None and latency_ms > self.latency_threshold_ms:
            wanted = max(wanted, min(rank + 1, len(TIERS) - 1))
        if wanted <= rank:
            return None
        return TIERS[wanted]

    def sample(self, current_tier: str, active_milestones: int, latency_ms: float | None = None) -> str | None:
        target = self.recommend(current_tier, active_milestones, latency_ms)
        if target is None:
            self.reset()
            return None
        if target == self._candidate:
            self._streak += 1
        else:
            self._candidate, self._streak = target, 1
        if self._streak < self.hysteresis:
            logger.debug("Tier %s suggested (%d/%d samples)", target, self._streak, self.hysteresis)
            return None
        logger.info(
            "Scale threshold crossed: %d active milestones on %s tier, recommending %s",
            active_milestones, current_tier, target,
        )
        return target

    def reset(self):
        self._candidate = None
        self._streak = 0
