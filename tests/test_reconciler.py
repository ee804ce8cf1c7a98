"""Unit tests for reconciler.py - the VPA reconciliation pass."""

import copy
import socket
import threading
import time

import pytest
import urllib3
from kubernetes import client

from conftest import api_error
from vpa_controller.config import AutoscalerConfig
from vpa_controller.crd_client import VerticalPodAutoscalerClient, build_custom_api
from vpa_controller.errors import (
    ReconcileError,
    ReconcileTimeoutError,
    ResourceCreationError,
    ResourceNotOwnedError,
)
from vpa_controller.reconciler import (
    Deadline,
    VPAReconciler,
    VPAState,
    classify_vpa,
)
from vpa_controller.resources import make_vpa
from vpa_controller.status import get_condition


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def reconciler(mock_custom_api):
    """Reconciler backed by a mocked CustomObjectsApi."""
    return VPAReconciler(VerticalPodAutoscalerClient(mock_custom_api))


@pytest.fixture
def silent_server():
    """
    Local TCP server that accepts connections and never answers.

    Yields the port and the list of accepted connections.
    """
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(8)
    server.settimeout(0.1)
    accepted = []
    stop = threading.Event()

    def serve():
        while not stop.is_set():
            try:
                conn, _ = server.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            accepted.append(conn)

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield server.getsockname()[1], accepted

    stop.set()
    thread.join(timeout=1)
    for conn in accepted:
        conn.close()
    server.close()


def write_calls(api):
    return (
        api.create_namespaced_custom_object.call_count
        + api.replace_namespaced_custom_object.call_count
    )


class TestDeadline:
    """Tests for Deadline."""

    def test_remaining(self):
        clock = FakeClock(100.0)
        deadline = Deadline(10, clock=clock)
        clock.now = 104.0
        assert deadline.remaining() == pytest.approx(6.0)

    def test_expired(self):
        clock = FakeClock()
        deadline = Deadline(10, clock=clock)
        clock.now = 10.0
        with pytest.raises(ReconcileTimeoutError):
            deadline.remaining()


class TestClassifyVPA:
    """Tests for classify_vpa."""

    def test_not_found(self, sample_pa):
        desired = make_vpa(sample_pa, AutoscalerConfig.default())
        assert classify_vpa(sample_pa, desired, None) is VPAState.NOT_FOUND

    def test_not_owned_wins_over_diff(self, sample_pa, observed_vpa):
        desired = make_vpa(sample_pa, AutoscalerConfig.default())
        observed_vpa["metadata"]["ownerReferences"][0]["uid"] = "other"
        observed_vpa["spec"]["targetRef"]["name"] = "different"
        assert classify_vpa(sample_pa, desired, observed_vpa) is VPAState.NOT_OWNED

    def test_needs_update(self, sample_pa, observed_vpa):
        desired = make_vpa(sample_pa, AutoscalerConfig.default())
        observed_vpa["spec"]["targetRef"]["name"] = "different"
        assert classify_vpa(sample_pa, desired, observed_vpa) is VPAState.NEEDS_UPDATE

    def test_converged_despite_defaulting(self, sample_pa, observed_vpa):
        """Server-side normalization of quantities is not a diff."""
        desired = make_vpa(sample_pa, AutoscalerConfig.default())
        policies = observed_vpa["spec"]["resourcePolicy"]["containerPolicies"]
        policies[0]["maxAllowed"]["memory"] = "5120Mi"
        policies[0]["minAllowed"] = None
        assert classify_vpa(sample_pa, desired, observed_vpa) is VPAState.CONVERGED


class TestReconcileKind:
    """Tests for VPAReconciler.reconcile_kind."""

    def test_create_when_missing(self, reconciler, mock_custom_api, sample_pa):
        """A missing VPA is created with exactly the desired object."""
        mock_custom_api.get_namespaced_custom_object.side_effect = api_error(404)
        mock_custom_api.create_namespaced_custom_object.side_effect = (
            lambda **kwargs: copy.deepcopy(kwargs["body"])
        )

        reconciler.reconcile_kind(sample_pa)

        call = mock_custom_api.create_namespaced_custom_object.call_args
        assert call.kwargs["namespace"] == "default"
        assert call.kwargs["plural"] == "verticalpodautoscalers"
        assert call.kwargs["body"] == make_vpa(sample_pa, AutoscalerConfig.default())
        mock_custom_api.replace_namespaced_custom_object.assert_not_called()
        assert sample_pa["status"]["resourceRecommendations"] == []

    def test_create_failure_marks_status(self, reconciler, mock_custom_api, sample_pa):
        mock_custom_api.get_namespaced_custom_object.side_effect = api_error(404)
        mock_custom_api.create_namespaced_custom_object.side_effect = api_error(500)

        with pytest.raises(ResourceCreationError):
            reconciler.reconcile_kind(sample_pa)

        condition = get_condition(sample_pa, "Ready")
        assert condition["reason"] == "FailedCreate"
        assert "resourceRecommendations" not in sample_pa["status"]

    def test_converged_makes_no_writes(self, reconciler, mock_custom_api, sample_pa, observed_vpa):
        """Reconciling an already converged pair is a no-op."""
        mock_custom_api.get_namespaced_custom_object.return_value = observed_vpa

        reconciler.reconcile_kind(sample_pa)
        reconciler.reconcile_kind(sample_pa)

        assert write_calls(mock_custom_api) == 0

    def test_not_owned(self, reconciler, mock_custom_api, sample_pa, observed_vpa):
        """A VPA controlled by another PodAutoscaler is never updated."""
        observed_vpa["metadata"]["ownerReferences"][0]["uid"] = "other-pa-uid"
        observed_vpa["spec"]["targetRef"]["name"] = "other-deployment"
        mock_custom_api.get_namespaced_custom_object.return_value = observed_vpa

        with pytest.raises(ResourceNotOwnedError):
            reconciler.reconcile_kind(sample_pa)

        assert write_calls(mock_custom_api) == 0
        assert get_condition(sample_pa, "Ready")["reason"] == "NotOwned"

    def test_update_on_diff(self, reconciler, mock_custom_api, sample_pa, observed_vpa):
        """A drifted spec is replaced once, carrying the observed resourceVersion."""
        observed_vpa["spec"]["targetRef"]["name"] = "stale-deployment"
        observed_vpa["metadata"]["labels"] = {"edited": "by-user"}
        mock_custom_api.get_namespaced_custom_object.return_value = observed_vpa

        reconciler.reconcile_kind(sample_pa)

        assert mock_custom_api.replace_namespaced_custom_object.call_count == 1
        call = mock_custom_api.replace_namespaced_custom_object.call_args
        body = call.kwargs["body"]
        assert call.kwargs["name"] == "hello-00001"
        assert body["spec"] == make_vpa(sample_pa, AutoscalerConfig.default())["spec"]
        assert body["metadata"]["resourceVersion"] == "42"
        assert body["metadata"]["labels"] == {"edited": "by-user"}
        mock_custom_api.create_namespaced_custom_object.assert_not_called()

    def test_update_conflict_not_retried(self, reconciler, mock_custom_api, sample_pa, observed_vpa):
        observed_vpa["spec"]["targetRef"]["name"] = "stale-deployment"
        mock_custom_api.get_namespaced_custom_object.return_value = observed_vpa
        mock_custom_api.replace_namespaced_custom_object.side_effect = api_error(409, "Conflict")

        with pytest.raises(ReconcileError, match="failed to update VPA"):
            reconciler.reconcile_kind(sample_pa)

        assert mock_custom_api.replace_namespaced_custom_object.call_count == 1

    def test_get_error_wrapped(self, reconciler, mock_custom_api, sample_pa):
        mock_custom_api.get_namespaced_custom_object.side_effect = api_error(503)

        with pytest.raises(ReconcileError, match="failed to get VPA") as exc_info:
            reconciler.reconcile_kind(sample_pa)

        assert not isinstance(exc_info.value, ResourceCreationError)
        assert write_calls(mock_custom_api) == 0

    def test_recommendations_copied(self, reconciler, mock_custom_api, sample_pa,
                                    observed_vpa, recommendation_status):
        observed_vpa["status"] = recommendation_status
        mock_custom_api.get_namespaced_custom_object.return_value = observed_vpa

        reconciler.reconcile_kind(sample_pa)

        assert sample_pa["status"]["resourceRecommendations"] == [
            {"containerName": "user-container", "cpu": "250m", "memory": "262144k"},
            {"containerName": "queue-proxy", "cpu": "25m", "memory": "50Mi"},
        ]

    def test_recommendations_cleared(self, reconciler, mock_custom_api, sample_pa,
                                     observed_vpa, recommendation_status):
        """A VPA that stops providing recommendations clears the status."""
        sample_pa["status"]["resourceRecommendations"] = [
            {"containerName": "user-container", "cpu": "1", "memory": "1Gi"},
        ]
        recommendation_status["conditions"][0]["status"] = "False"
        observed_vpa["status"] = recommendation_status
        mock_custom_api.get_namespaced_custom_object.return_value = observed_vpa

        reconciler.reconcile_kind(sample_pa)

        assert sample_pa["status"]["resourceRecommendations"] == []

    def test_uses_current_config(self, mock_custom_api, sample_pa):
        """The desired VPA follows the configuration at reconcile time."""
        from vpa_controller.config import ContainerPolicy

        config = AutoscalerConfig(container_policies=(ContainerPolicy("app"),))
        reconciler = VPAReconciler(
            VerticalPodAutoscalerClient(mock_custom_api),
            config_provider=lambda: config,
        )
        mock_custom_api.get_namespaced_custom_object.side_effect = api_error(404)
        mock_custom_api.create_namespaced_custom_object.side_effect = (
            lambda **kwargs: kwargs["body"]
        )

        reconciler.reconcile_kind(sample_pa)

        body = mock_custom_api.create_namespaced_custom_object.call_args.kwargs["body"]
        policies = body["spec"]["resourcePolicy"]["containerPolicies"]
        assert [p["containerName"] for p in policies] == ["app"]


class TestReconcileTimeout:
    """Tests for deadline handling."""

    def test_request_timeout_passed(self, reconciler, mock_custom_api, sample_pa, observed_vpa):
        """Every call is bounded by what is left of the deadline."""
        mock_custom_api.get_namespaced_custom_object.return_value = observed_vpa

        reconciler.reconcile_kind(sample_pa)

        timeout = mock_custom_api.get_namespaced_custom_object.call_args.kwargs["_request_timeout"]
        assert 0 < timeout <= 10

    def test_api_timeout(self, reconciler, mock_custom_api, sample_pa):
        """A request that times out fails the pass and nothing else is called."""
        mock_custom_api.get_namespaced_custom_object.side_effect = (
            urllib3.exceptions.ReadTimeoutError(None, "/apis", "Read timed out.")
        )

        with pytest.raises(ReconcileTimeoutError):
            reconciler.reconcile_kind(sample_pa)

        assert write_calls(mock_custom_api) == 0

    def test_expired_deadline_issues_no_calls(self, reconciler, mock_custom_api, sample_pa):
        clock = FakeClock()
        deadline = Deadline(10, clock=clock)
        clock.now = 11.0

        with pytest.raises(ReconcileTimeoutError):
            reconciler.reconcile_kind(sample_pa, deadline=deadline)

        mock_custom_api.get_namespaced_custom_object.assert_not_called()
        assert write_calls(mock_custom_api) == 0

    def test_deadline_expires_between_calls(self, reconciler, mock_custom_api, sample_pa, observed_vpa):
        """Time spent on the read counts against the write."""
        clock = FakeClock()
        deadline = Deadline(10, clock=clock)
        observed_vpa["spec"]["targetRef"]["name"] = "stale"

        def slow_get(**kwargs):
            clock.now = 12.0
            return observed_vpa

        mock_custom_api.get_namespaced_custom_object.side_effect = slow_get

        with pytest.raises(ReconcileTimeoutError):
            reconciler.reconcile_kind(sample_pa, deadline=deadline)

        mock_custom_api.replace_namespaced_custom_object.assert_not_called()

    def test_deadline_expires_before_create(self, reconciler, mock_custom_api, sample_pa):
        """No create is sent, so the PA is not marked FailedCreate."""
        clock = FakeClock()
        deadline = Deadline(10, clock=clock)

        def slow_get(**kwargs):
            clock.now = 12.0
            raise api_error(404)

        mock_custom_api.get_namespaced_custom_object.side_effect = slow_get

        with pytest.raises(ReconcileTimeoutError):
            reconciler.reconcile_kind(sample_pa, deadline=deadline)

        mock_custom_api.create_namespaced_custom_object.assert_not_called()
        assert get_condition(sample_pa, "Ready") is None


class TestReconcileTimeoutOverHTTP:
    """Deadline handling with a real ApiClient talking to a socket."""

    def test_unresponsive_api_server(self, silent_server, sample_pa):
        """One request, cut off when the budget runs out."""
        port, accepted = silent_server
        configuration = client.Configuration(host=f"http://127.0.0.1:{port}")
        vpa_client = VerticalPodAutoscalerClient(build_custom_api(configuration))
        reconciler = VPAReconciler(vpa_client, timeout=1)

        start = time.monotonic()
        with pytest.raises(ReconcileTimeoutError):
            reconciler.reconcile_kind(sample_pa)
        elapsed = time.monotonic() - start

        assert elapsed < 1.8
        # give the accept loop a moment to record any late connection
        time.sleep(0.3)
        assert len(accepted) == 1
