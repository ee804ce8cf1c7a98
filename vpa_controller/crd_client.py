"""Clients for the PodAutoscaler and VerticalPodAutoscaler custom resources."""

import logging
from contextlib import contextmanager
from typing import Optional, Dict, Any, List

import urllib3
from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from .config import (
    PA_GROUP,
    PA_VERSION,
    PA_PLURAL,
    VPA_GROUP,
    VPA_VERSION,
    VPA_PLURAL,
)
from .errors import ReconcileTimeoutError

logger = logging.getLogger(__name__)


@contextmanager
def translate_timeouts(action: str):
    """Re-raise urllib3 timeouts as ReconcileTimeoutError."""
    try:
        yield
    except urllib3.exceptions.TimeoutError as e:
        raise ReconcileTimeoutError(f"{action} timed out: {e}") from e
    except urllib3.exceptions.MaxRetryError as e:
        if isinstance(e.reason, urllib3.exceptions.TimeoutError):
            raise ReconcileTimeoutError(f"{action} timed out: {e}") from e
        raise


def build_custom_api(configuration: Optional[client.Configuration] = None) -> client.CustomObjectsApi:
    """
    Create a CustomObjectsApi whose requests are attempted exactly once.

    urllib3 otherwise retries idempotent requests after a timeout, giving
    each attempt a fresh timeout, so a deadline passed as ``_request_timeout``
    would not bound the call.

    Args:
        configuration: Client configuration (a copy of the default if None);
            its ``retries`` is set to False
    """
    if configuration is None:
        configuration = client.Configuration.get_default_copy()
    configuration.retries = False
    return client.CustomObjectsApi(client.ApiClient(configuration))


def _watch_stream(custom_api, group: str, version: str, plural: str,
                  namespace: str = "", timeout: int = 300):
    w = watch.Watch()
    if namespace:
        return w.stream(
            custom_api.list_namespaced_custom_object,
            group=group,
            version=version,
            namespace=namespace,
            plural=plural,
            timeout_seconds=timeout
        )
    return w.stream(
        custom_api.list_cluster_custom_object,
        group=group,
        version=version,
        plural=plural,
        timeout_seconds=timeout
    )


class VerticalPodAutoscalerClient:
    """
    Client for VerticalPodAutoscaler custom resources.

    Every call takes a ``timeout`` in seconds that bounds the HTTP request,
    so a reconciliation deadline can be carried down to the wire.
    """

    def __init__(self, custom_api: Optional[client.CustomObjectsApi] = None):
        """Initialize the VPA client."""
        self.custom_api = custom_api or build_custom_api()

    def get(self, namespace: str, name: str,
            timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """
        Get a VPA.

        Args:
            namespace: VPA namespace
            name: VPA name
            timeout: Request timeout in seconds

        Returns:
            VPA object or None if not found

        Raises:
            ApiException: On any API error other than 404
            ReconcileTimeoutError: If the request timed out
        """
        try:
            with translate_timeouts(f"get VPA {namespace}/{name}"):
                return self.custom_api.get_namespaced_custom_object(
                    group=VPA_GROUP,
                    version=VPA_VERSION,
                    namespace=namespace,
                    plural=VPA_PLURAL,
                    name=name,
                    _request_timeout=timeout
                )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def create(self, namespace: str, body: Dict[str, Any],
               timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Create a VPA.

        Returns:
            The created VPA as returned by the API server
        """
        with translate_timeouts(f"create VPA in {namespace}"):
            return self.custom_api.create_namespaced_custom_object(
                group=VPA_GROUP,
                version=VPA_VERSION,
                namespace=namespace,
                plural=VPA_PLURAL,
                body=body,
                _request_timeout=timeout
            )

    def update(self, namespace: str, body: Dict[str, Any],
               timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Replace a VPA.

        ``body`` must carry the ``metadata.resourceVersion`` that was read,
        otherwise the API server cannot detect a conflicting write.

        Returns:
            The updated VPA

        Raises:
            ApiException: 409 if the object changed since it was read
        """
        name = body["metadata"]["name"]
        with translate_timeouts(f"update VPA {namespace}/{name}"):
            return self.custom_api.replace_namespaced_custom_object(
                group=VPA_GROUP,
                version=VPA_VERSION,
                namespace=namespace,
                plural=VPA_PLURAL,
                name=name,
                body=body,
                _request_timeout=timeout
            )

    def watch(self, namespace: str = "", timeout: int = 300):
        """
        Create a watch stream for VPA objects.

        Yields:
            Watch events
        """
        yield from _watch_stream(
            self.custom_api, VPA_GROUP, VPA_VERSION, VPA_PLURAL,
            namespace=namespace, timeout=timeout
        )


class PodAutoscalerClient:
    """Client for PodAutoscaler custom resources."""

    def __init__(self, custom_api: Optional[client.CustomObjectsApi] = None):
        """Initialize the PodAutoscaler client."""
        self.custom_api = custom_api or client.CustomObjectsApi()

    def list(self, namespace: str = "") -> List[Dict[str, Any]]:
        """
        List PodAutoscaler objects.

        Args:
            namespace: Namespace to list from ("" for all namespaces)

        Returns:
            List of PodAutoscaler objects
        """
        if namespace:
            response = self.custom_api.list_namespaced_custom_object(
                group=PA_GROUP,
                version=PA_VERSION,
                namespace=namespace,
                plural=PA_PLURAL
            )
        else:
            response = self.custom_api.list_cluster_custom_object(
                group=PA_GROUP,
                version=PA_VERSION,
                plural=PA_PLURAL
            )
        return response.get("items", [])

    def get(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """
        Get a PodAutoscaler.

        Returns:
            PodAutoscaler object or None if not found
        """
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=PA_GROUP,
                version=PA_VERSION,
                namespace=namespace,
                plural=PA_PLURAL,
                name=name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def update_status(self, pa: Dict[str, Any]) -> Dict[str, Any]:
        """
        Persist the status of a PodAutoscaler.

        Args:
            pa: PodAutoscaler object whose ``status`` should be written

        Returns:
            The patched object
        """
        metadata = pa["metadata"]
        result = self.custom_api.patch_namespaced_custom_object_status(
            group=PA_GROUP,
            version=PA_VERSION,
            namespace=metadata["namespace"],
            plural=PA_PLURAL,
            name=metadata["name"],
            body={"status": pa.get("status") or {}}
        )
        logger.debug(f"Updated status for PodAutoscaler {metadata['namespace']}/{metadata['name']}")
        return result

    def watch(self, namespace: str = "", timeout: int = 300):
        """
        Create a watch stream for PodAutoscaler objects.

        Yields:
            Watch events
        """
        yield from _watch_stream(
            self.custom_api, PA_GROUP, PA_VERSION, PA_PLURAL,
            namespace=namespace, timeout=timeout
        )
