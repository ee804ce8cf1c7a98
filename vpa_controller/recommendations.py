"""Extracts VPA recommendations for the PodAutoscaler status."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .config import RECOMMENDATION_PROVIDED

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceRecommendation:
    """Recommended resources for one container."""
    container_name: str
    cpu: Optional[str] = None
    memory: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the PodAutoscaler status form."""
        return {
            "containerName": self.container_name,
            "cpu": self.cpu,
            "memory": self.memory,
        }


def recommendation_provided(vpa: Dict[str, Any]) -> bool:
    """
    Check whether the VPA reports a usable recommendation.

    Only the first status condition is inspected.
    """
    status = vpa.get("status") or {}
    conditions = status.get("conditions") or []
    if not conditions or not status.get("recommendation"):
        return False

    condition = conditions[0]
    return (
        condition.get("type") == RECOMMENDATION_PROVIDED
        and condition.get("status") == "True"
    )


def extract_recommendations(vpa: Dict[str, Any]) -> List[ResourceRecommendation]:
    """
    Read per-container recommendations off an observed VPA.

    An empty list means "no recommendation yet" and is meant to replace
    whatever the PodAutoscaler status held before.

    Args:
        vpa: Observed VPA object

    Returns:
        One ResourceRecommendation per container, in the VPA's order
    """
    if not recommendation_provided(vpa):
        return []

    recommendation = vpa["status"]["recommendation"]
    results = []
    for item in recommendation.get("containerRecommendations") or []:
        target = item.get("target") or {}
        results.append(ResourceRecommendation(
            container_name=item.get("containerName", ""),
            cpu=target.get("cpu"),
            memory=target.get("memory"),
        ))

    logger.debug(
        f"Extracted {len(results)} recommendation(s) from VPA "
        f"{(vpa.get('metadata') or {}).get('name')}"
    )
    return results
