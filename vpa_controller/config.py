"""Configuration settings for the VPA PodAutoscaler Controller."""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# PodAutoscaler CRD Settings
PA_GROUP = "autoscaling.internal.knative.dev"
PA_VERSION = "v1alpha1"
PA_PLURAL = "podautoscalers"
PA_KIND = "PodAutoscaler"

# VerticalPodAutoscaler CRD Settings
VPA_GROUP = "autoscaling.k8s.io"
VPA_VERSION = "v1"
VPA_PLURAL = "verticalpodautoscalers"
VPA_KIND = "VerticalPodAutoscaler"

# PodAutoscalers carrying this annotation are handled by this controller
VPA_ANNOTATION_KEY = "autoscaling.knative.dev/vpa"

# VPA constants
UPDATE_MODE_OFF = "Off"
CONTAINER_SCALING_MODE_AUTO = "Auto"
CONTAINER_SCALING_MODE_OFF = "Off"
RECOMMENDATION_PROVIDED = "RecommendationProvided"

# Autoscaler ConfigMap
AUTOSCALER_CONFIGMAP_NAME = "config-autoscaler"
AUTOSCALER_CONFIGMAP_NAMESPACE = "knative-serving"
CONTAINER_POLICIES_KEY = "vpa-container-policies"

# Watch settings
WATCH_TIMEOUT_SECONDS = 300
RESYNC_INTERVAL_SECONDS = 30

# Upper bound on one reconciliation pass
RECONCILE_TIMEOUT_SECONDS = 10

# Default per-container ceilings
DEFAULT_MAX_CPU = "4"
DEFAULT_MAX_MEMORY = "5Gi"


@dataclass(frozen=True)
class ContainerPolicy:
    """Scaling mode and resource ceiling for one container of the target."""

    container_name: str
    mode: str = CONTAINER_SCALING_MODE_AUTO
    max_cpu: str = DEFAULT_MAX_CPU
    max_memory: str = DEFAULT_MAX_MEMORY

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContainerPolicy":
        """Create a ContainerPolicy from its ConfigMap JSON form."""
        if not isinstance(data, dict) or not data.get("containerName"):
            raise ValueError(f"container policy without containerName: {data}")
        max_allowed = data.get("maxAllowed", {})
        return cls(
            container_name=data["containerName"],
            mode=data.get("mode", CONTAINER_SCALING_MODE_AUTO),
            max_cpu=str(max_allowed.get("cpu", DEFAULT_MAX_CPU)),
            max_memory=str(max_allowed.get("memory", DEFAULT_MAX_MEMORY)),
        )


def default_container_policies() -> List[ContainerPolicy]:
    """The user container is scaled, the queue-proxy sidecar is not."""
    return [
        ContainerPolicy("user-container", CONTAINER_SCALING_MODE_AUTO),
        ContainerPolicy("queue-proxy", CONTAINER_SCALING_MODE_OFF),
    ]


@dataclass(frozen=True)
class AutoscalerConfig:
    """Autoscaler tunables consumed when building the VPA."""

    container_policies: Tuple[ContainerPolicy, ...] = field(
        default_factory=lambda: tuple(default_container_policies())
    )

    @classmethod
    def default(cls) -> "AutoscalerConfig":
        """Return default configuration."""
        return cls()

    @classmethod
    def from_configmap(cls, data: Optional[Dict[str, str]]) -> "AutoscalerConfig":
        """
        Parse the autoscaler ConfigMap data.

        Args:
            data: The ConfigMap ``data`` map (may be None)

        Returns:
            AutoscalerConfig; keys that are absent fall back to defaults

        Raises:
            ValueError: If the container policies value is not a JSON list
                of policy objects
        """
        data = data or {}
        raw = data.get(CONTAINER_POLICIES_KEY)
        if not raw:
            return cls.default()

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid {CONTAINER_POLICIES_KEY}: {e}") from e
        if not isinstance(parsed, list):
            raise ValueError(f"{CONTAINER_POLICIES_KEY} must be a JSON list")

        return cls(
            container_policies=tuple(ContainerPolicy.from_dict(p) for p in parsed)
        )


@dataclass
class ControllerConfig:
    """Controller process configuration."""

    namespace: str = ""  # "" = all namespaces
    workers: int = 2
    resync_interval: int = RESYNC_INTERVAL_SECONDS
    reconcile_timeout: float = RECONCILE_TIMEOUT_SECONDS
    backoff_base_delay: float = 0.5
    backoff_max_delay: float = 300.0
    configmap_name: str = AUTOSCALER_CONFIGMAP_NAME
    configmap_namespace: str = AUTOSCALER_CONFIGMAP_NAMESPACE

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            namespace=os.getenv("WATCH_NAMESPACE", ""),
            workers=int(os.getenv("WORKERS", "2")),
            resync_interval=int(
                os.getenv("RESYNC_INTERVAL", str(RESYNC_INTERVAL_SECONDS))
            ),
            reconcile_timeout=float(
                os.getenv("RECONCILE_TIMEOUT", str(RECONCILE_TIMEOUT_SECONDS))
            ),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "0.5")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            configmap_name=os.getenv(
                "AUTOSCALER_CONFIGMAP_NAME", AUTOSCALER_CONFIGMAP_NAME
            ),
            configmap_namespace=os.getenv(
                "SYSTEM_NAMESPACE", AUTOSCALER_CONFIGMAP_NAMESPACE
            ),
        )
