"""
Automation Router

Maps the best Match to one of four tiers:

    confidence >= auto threshold AND pattern.auto_executable -> execute
    confidence >= suggest threshold                          -> suggest (countdown)
    confidence >= approval threshold                         -> approval queue
    otherwise, or no match at all                            -> anomaly
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from opspilot.observability.logging import get_logger
from opspilot.observability.telemetry import counter
from opspilot.runtime.policy import RoutingPolicy
from opspilot.storage.models import Match

logger = get_logger(__name__)

NO_MATCHING_PATTERN = "no_matching_pattern"
LOW_CONFIDENCE = "low_confidence"


class Tier(str, Enum):
    EXECUTE = "execute"
    SUGGEST = "suggest"
    APPROVAL = "approval"
    ANOMALY = "anomaly"


@dataclass
class RoutingDecision:
    tier: Tier
    match: Match | None
    reason: str | None = None


class AutomationRouter:
    def __init__(self, policy: RoutingPolicy) -> None:
        self.policy = policy

    def select_tier(self, match: Match | None) -> RoutingDecision:
        if match is None:
            decision = RoutingDecision(Tier.ANOMALY, None, NO_MATCHING_PATTERN)
        elif (
            match.confidence >= self.policy.auto_execute_threshold
            and match.pattern.auto_executable
        ):
            decision = RoutingDecision(Tier.EXECUTE, match)
        elif match.confidence >= self.policy.suggest_threshold:
            decision = RoutingDecision(Tier.SUGGEST, match)
        elif match.confidence >= self.policy.approval_threshold:
            decision = RoutingDecision(Tier.APPROVAL, match)
        else:
            decision = RoutingDecision(Tier.ANOMALY, match, LOW_CONFIDENCE)

        counter(f"router.tier.{decision.tier.value}")
        logger.debug(
            "Routed to %s (confidence=%s, pattern=%s)",
            decision.tier.value,
            f"{match.confidence:.3f}" if match else "none",
            match.pattern.id if match else "none",
        )
        return decision

    def route(self, matches: list[Match]) -> RoutingDecision:
        """Route on the highest-confidence match; matches arrive ranked best first."""
        best = max(matches, key=lambda m: m.confidence) if matches else None
        return self.select_tier(best)
