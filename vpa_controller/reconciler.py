"""Reconciliation logic for VPA-class PodAutoscalers."""

import copy
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import urllib3
from kubernetes.client.rest import ApiException

from .config import AutoscalerConfig, RECONCILE_TIMEOUT_SECONDS, VPA_KIND
from .crd_client import VerticalPodAutoscalerClient
from .errors import (
    ReconcileError,
    ReconcileTimeoutError,
    ResourceCreationError,
    ResourceNotOwnedError,
)
from .recommendations import extract_recommendations
from .resources import make_vpa
from .status import (
    mark_resource_failed_creation,
    mark_resource_not_owned,
    set_resource_recommendations,
)
from .utils import is_controlled_by, semantic_equal

logger = logging.getLogger(__name__)

# API and connection errors; all of them are retried by requeueing the key
TRANSIENT_ERRORS = (ApiException, urllib3.exceptions.HTTPError)


def _describe(error: Exception) -> str:
    return str(getattr(error, "reason", None) or error)


class Deadline:
    """Wall-clock budget shared by every API call of one pass."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.seconds = seconds
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        """
        Seconds left before expiry.

        Raises:
            ReconcileTimeoutError: If the budget is used up
        """
        left = self.expires_at - self._clock()
        if left <= 0:
            raise ReconcileTimeoutError(
                f"reconciliation exceeded its {self.seconds}s deadline"
            )
        return left


class VPAState(Enum):
    """Outcome of comparing the observed VPA with the desired one."""
    NOT_FOUND = "NotFound"
    NOT_OWNED = "NotOwned"
    NEEDS_UPDATE = "NeedsUpdate"
    CONVERGED = "Converged"


def classify_vpa(
    pa: Dict[str, Any],
    desired: Dict[str, Any],
    observed: Optional[Dict[str, Any]],
) -> VPAState:
    """
    Decide what a pass has to do with the observed VPA.

    Ownership is checked before the spec diff, so a VPA we do not control
    is never reported as needing an update.
    """
    if observed is None:
        return VPAState.NOT_FOUND
    if not is_controlled_by(observed, pa):
        return VPAState.NOT_OWNED
    if not semantic_equal(desired.get("spec"), observed.get("spec")):
        return VPAState.NEEDS_UPDATE
    return VPAState.CONVERGED


class VPAReconciler:
    """
    Keeps a PodAutoscaler's VPA in sync and copies its recommendations back.

    Precondition: ``reconcile_kind`` is never called concurrently for the
    same PodAutoscaler. The fetch then create/update sequence is not atomic
    and relies on that serialization plus the API server's resourceVersion
    check; there is no lock here.
    """

    def __init__(
        self,
        vpa_client: VerticalPodAutoscalerClient,
        config_provider: Callable[[], AutoscalerConfig] = AutoscalerConfig.default,
        timeout: float = RECONCILE_TIMEOUT_SECONDS,
    ):
        """
        Initialize the reconciler.

        Args:
            vpa_client: Client for VPA objects
            config_provider: Returns the current autoscaler configuration
            timeout: Deadline in seconds for a single pass
        """
        self.vpa_client = vpa_client
        self.config_provider = config_provider
        self.timeout = timeout

    def reconcile_kind(self, pa: Dict[str, Any], deadline: Optional[Deadline] = None) -> None:
        """
        Run one reconciliation pass for a PodAutoscaler.

        Recommendations and failure conditions are written to ``pa["status"]``
        in memory only; persisting them is up to the caller.

        Args:
            pa: PodAutoscaler object, mutated in place
            deadline: Budget for the pass (defaults to ``self.timeout``)

        Raises:
            ResourceCreationError: The VPA could not be created
            ResourceNotOwnedError: The VPA exists but is not controlled by ``pa``
            ReconcileTimeoutError: The deadline expired
            ReconcileError: Any other API failure
        """
        if deadline is None:
            deadline = Deadline(self.timeout)

        namespace = pa["metadata"]["namespace"]
        desired = make_vpa(pa, self.config_provider())
        name = desired["metadata"]["name"]
        key = f"{namespace}/{name}"

        try:
            observed = self.vpa_client.get(namespace, name, timeout=deadline.remaining())
        except TRANSIENT_ERRORS as e:
            raise ReconcileError(f"failed to get VPA {key}: {_describe(e)}") from e

        state = classify_vpa(pa, desired, observed)
        logger.debug(f"VPA {key} is {state.value}")

        if state is VPAState.NOT_FOUND:
            observed = self._create(pa, desired, deadline)
        elif state is VPAState.NOT_OWNED:
            mark_resource_not_owned(pa, VPA_KIND, name)
            raise ResourceNotOwnedError(
                f"PodAutoscaler {pa['metadata']['name']!r} does not own VPA {name!r}"
            )
        elif state is VPAState.NEEDS_UPDATE:
            self._update(desired, observed, deadline)

        set_resource_recommendations(pa, extract_recommendations(observed))

    def _create(self, pa: Dict[str, Any], desired: Dict[str, Any],
                deadline: Deadline) -> Dict[str, Any]:
        namespace = desired["metadata"]["namespace"]
        name = desired["metadata"]["name"]
        timeout = deadline.remaining()
        logger.info(f"Creating VPA {namespace}/{name}")

        try:
            return self.vpa_client.create(namespace, desired, timeout=timeout)
        except ReconcileTimeoutError:
            mark_resource_failed_creation(pa, VPA_KIND, name)
            raise
        except TRANSIENT_ERRORS as e:
            mark_resource_failed_creation(pa, VPA_KIND, name)
            raise ResourceCreationError(f"failed to create VPA {namespace}/{name}: {_describe(e)}") from e

    def _update(self, desired: Dict[str, Any], observed: Dict[str, Any],
                deadline: Deadline) -> Dict[str, Any]:
        namespace = desired["metadata"]["namespace"]
        name = desired["metadata"]["name"]
        logger.info(f"Updating VPA {namespace}/{name}")

        # Only the spec is corrected; metadata of the existing object is kept.
        body = copy.deepcopy(observed)
        body["spec"] = desired["spec"]
        body.pop("status", None)

        try:
            return self.vpa_client.update(namespace, body, timeout=deadline.remaining())
        except TRANSIENT_ERRORS as e:
            raise ReconcileError(f"failed to update VPA {namespace}/{name}: {_describe(e)}") from e
