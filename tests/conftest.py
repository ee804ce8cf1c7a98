"""Pytest configuration and fixtures."""

import copy

import pytest
from unittest.mock import MagicMock

from kubernetes.client.rest import ApiException

from vpa_controller.config import AutoscalerConfig, VPA_ANNOTATION_KEY
from vpa_controller.resources import make_vpa


def api_error(status: int, reason: str = "") -> ApiException:
    """Build an ApiException with the given HTTP status."""
    return ApiException(status=status, reason=reason or f"HTTP {status}")


@pytest.fixture
def sample_pa():
    """Sample VPA-class PodAutoscaler."""
    return {
        "apiVersion": "autoscaling.internal.knative.dev/v1alpha1",
        "kind": "PodAutoscaler",
        "metadata": {
            "name": "hello-00001",
            "namespace": "default",
            "uid": "pa-uid-1",
            "labels": {"serving.knative.dev/revision": "hello-00001"},
            "annotations": {VPA_ANNOTATION_KEY: "true"},
        },
        "spec": {
            "scaleTargetRef": {
                "apiVersion": "apps/v1",
                "kind": "Deployment",
                "name": "hello-00001-deployment",
            },
        },
        "status": {},
    }


@pytest.fixture
def observed_vpa(sample_pa):
    """A VPA as the API server would return it for ``sample_pa``."""
    vpa = copy.deepcopy(make_vpa(sample_pa, AutoscalerConfig.default()))
    vpa["metadata"]["resourceVersion"] = "42"
    vpa["metadata"]["uid"] = "vpa-uid-1"
    return vpa


@pytest.fixture
def recommendation_status():
    """VPA status carrying recommendations for two containers."""
    return {
        "conditions": [
            {"type": "RecommendationProvided", "status": "True"},
        ],
        "recommendation": {
            "containerRecommendations": [
                {
                    "containerName": "user-container",
                    "target": {"cpu": "250m", "memory": "262144k"},
                },
                {
                    "containerName": "queue-proxy",
                    "target": {"cpu": "25m", "memory": "50Mi"},
                },
            ],
        },
    }


@pytest.fixture
def mock_custom_api():
    """Create a mock CustomObjectsApi."""
    return MagicMock()
