"""Builds the VerticalPodAutoscaler desired for a PodAutoscaler."""

import copy
from typing import Any, Dict, List

from .config import (
    AutoscalerConfig,
    ContainerPolicy,
    PA_GROUP,
    PA_KIND,
    PA_VERSION,
    UPDATE_MODE_OFF,
    VPA_GROUP,
    VPA_KIND,
    VPA_VERSION,
)


def make_controller_ref(pa: Dict[str, Any]) -> Dict[str, Any]:
    """Create a controller owner reference pointing at the PodAutoscaler."""
    metadata = pa.get("metadata") or {}
    return {
        "apiVersion": f"{PA_GROUP}/{PA_VERSION}",
        "kind": PA_KIND,
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def make_container_policies(policies) -> List[Dict[str, Any]]:
    """Render container policies in VPA wire form, preserving order."""
    return [_container_policy(p) for p in policies]


def _container_policy(policy: ContainerPolicy) -> Dict[str, Any]:
    return {
        "containerName": policy.container_name,
        "mode": policy.mode,
        "maxAllowed": {
            "cpu": policy.max_cpu,
            "memory": policy.max_memory,
        },
    }


def make_vpa(pa: Dict[str, Any], config: AutoscalerConfig) -> Dict[str, Any]:
    """
    Create the VPA resource for a PodAutoscaler.

    The VPA only produces recommendations: its update mode is always off,
    so the recommender never evicts or mutates the target's pods.

    Args:
        pa: The PodAutoscaler object
        config: Current autoscaler configuration

    Returns:
        A new VPA object. Nothing in it aliases ``pa``.
    """
    metadata = pa.get("metadata") or {}
    scale_target = (pa.get("spec") or {}).get("scaleTargetRef") or {}

    return {
        "apiVersion": f"{VPA_GROUP}/{VPA_VERSION}",
        "kind": VPA_KIND,
        "metadata": {
            "name": metadata.get("name"),
            "namespace": metadata.get("namespace"),
            "labels": copy.deepcopy(metadata.get("labels")) or {},
            "annotations": copy.deepcopy(metadata.get("annotations")) or {},
            "ownerReferences": [make_controller_ref(pa)],
        },
        "spec": {
            "targetRef": {
                "apiVersion": scale_target.get("apiVersion"),
                "kind": scale_target.get("kind"),
                "name": scale_target.get("name"),
            },
            "updatePolicy": {
                "updateMode": UPDATE_MODE_OFF,
            },
            "resourcePolicy": {
                "containerPolicies": make_container_policies(
                    config.container_policies
                ),
            },
        },
    }
