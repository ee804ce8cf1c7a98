"""Main controller logic for the VPA PodAutoscaler Controller."""

import copy
import logging
import threading
import time
from typing import Any, Dict, Optional

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from .config import (
    ControllerConfig,
    PA_KIND,
    PA_GROUP,
    VPA_ANNOTATION_KEY,
    WATCH_TIMEOUT_SECONDS,
)
from .config_store import ConfigStore
from .crd_client import PodAutoscalerClient, VerticalPodAutoscalerClient
from .errors import ReconcileError
from .reconciler import VPAReconciler
from .utils import get_controller_of, object_key, split_key
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


def is_vpa_class(obj: Dict[str, Any]) -> bool:
    """Check whether an object carries the VPA class annotation."""
    annotations = (obj.get("metadata") or {}).get("annotations") or {}
    return VPA_ANNOTATION_KEY in annotations


def controlling_pa_key(vpa: Dict[str, Any]) -> Optional[str]:
    """Return the key of the PodAutoscaler controlling a VPA, if any."""
    ref = get_controller_of(vpa)
    if ref is None or ref.get("kind") != PA_KIND:
        return None
    if not str(ref.get("apiVersion", "")).startswith(f"{PA_GROUP}/"):
        return None
    namespace = (vpa.get("metadata") or {}).get("namespace", "")
    return f"{namespace}/{ref.get('name')}"


class VPAController:
    """
    Watches VPA-class PodAutoscalers and the VPAs they own, and runs
    reconciliation for each affected PodAutoscaler on worker threads.
    """

    def __init__(
        self,
        config: Optional[ControllerConfig] = None,
        pa_client: Optional[PodAutoscalerClient] = None,
        vpa_client: Optional[VerticalPodAutoscalerClient] = None,
        core_api: Optional[client.CoreV1Api] = None,
    ):
        """
        Initialize the controller.

        Args:
            config: Controller configuration (defaults if None)
            pa_client: Client for PodAutoscalers
            vpa_client: Client for VPAs
            core_api: CoreV1Api used to watch the autoscaler ConfigMap
        """
        self.config = config or ControllerConfig()
        self.pa_client = pa_client or PodAutoscalerClient()
        self.vpa_client = vpa_client or VerticalPodAutoscalerClient()
        self.core_api = core_api or client.CoreV1Api()

        self.queue = WorkQueue(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
        )
        self.config_store = ConfigStore(on_change=lambda _: self.global_resync())
        self.reconciler = VPAReconciler(
            self.vpa_client,
            config_provider=self.config_store.get,
            timeout=self.config.reconcile_timeout,
        )

        self._stop_event = threading.Event()
        self._threads = []

    def handle_pa_event(self, event_type: str, pa: Dict[str, Any]) -> None:
        """
        Handle a PodAutoscaler watch event.

        Args:
            event_type: ADDED, MODIFIED, or DELETED
            pa: The PodAutoscaler object from the event
        """
        if event_type == "DELETED" or not is_vpa_class(pa):
            return
        self.queue.add(object_key(pa))

    def handle_vpa_event(self, event_type: str, vpa: Dict[str, Any]) -> None:
        """
        Handle a VPA watch event by enqueuing its controlling PodAutoscaler.

        Deletions are enqueued too so that a removed VPA gets recreated.
        """
        if not is_vpa_class(vpa):
            return
        key = controlling_pa_key(vpa)
        if key is not None:
            self.queue.add(key)

    def global_resync(self) -> int:
        """
        Enqueue every VPA-class PodAutoscaler.

        Returns:
            Number of keys enqueued
        """
        try:
            pas = self.pa_client.list(self.config.namespace)
        except ApiException as e:
            logger.error(f"Error listing PodAutoscalers for resync: {e}")
            return 0

        count = 0
        for pa in pas:
            if is_vpa_class(pa):
                self.queue.add(object_key(pa))
                count += 1
        logger.debug(f"Resync enqueued {count} PodAutoscaler(s)")
        return count

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """
        Take one key off the queue and reconcile it.

        Args:
            timeout: Maximum seconds to wait for a key

        Returns:
            False if no key was available (timeout or shutdown)
        """
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False

        try:
            self.reconcile_key(key)
        except (ReconcileError, ApiException) as e:
            logger.warning(f"Reconcile of {key} failed, requeueing: {e}")
            self.queue.add_rate_limited(key)
        except Exception:
            logger.exception(f"Unexpected error reconciling {key}, requeueing")
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def reconcile_key(self, key: str) -> None:
        """
        Reconcile the PodAutoscaler named by ``key`` and persist its status.

        The status is written even when reconciliation fails, so conditions
        marked during the failed pass become visible.

        Raises:
            ReconcileError: Reconciliation failed
            ApiException: Reading the PodAutoscaler or writing its status failed
        """
        namespace, name = split_key(key)
        pa = self.pa_client.get(namespace, name)
        if pa is None:
            logger.debug(f"PodAutoscaler {key} no longer exists")
            return
        if not is_vpa_class(pa):
            return

        original_status = copy.deepcopy(pa.get("status"))
        try:
            self.reconciler.reconcile_kind(pa)
        except Exception:
            # The reconcile error is what gets requeued and logged.
            if pa.get("status") != original_status:
                try:
                    self.pa_client.update_status(pa)
                except ApiException as e:
                    logger.error(f"Failed to persist status of PodAutoscaler {key}: {e}")
            raise

        if pa.get("status") != original_status:
            self.pa_client.update_status(pa)

    def load_config(self) -> None:
        """Read the autoscaler ConfigMap once on startup."""
        try:
            cm = self.core_api.read_namespaced_config_map(
                name=self.config.configmap_name,
                namespace=self.config.configmap_namespace,
            )
        except ApiException as e:
            if e.status == 404:
                logger.info("Autoscaler ConfigMap not found, using defaults")
                return
            raise
        self.config_store.apply_configmap("ADDED", {"data": cm.data})

    def _watch_loop(self, name: str, stream_factory, handler) -> None:
        logger.info(f"Starting {name} watcher...")

        while not self._stop_event.is_set():
            try:
                for event in stream_factory():
                    if self._stop_event.is_set():
                        break
                    handler(event["type"], event["object"])
            except ApiException as e:
                logger.error(f"{name} watch error: {e}")
                time.sleep(5)
            except Exception as e:
                logger.error(f"Unexpected error in {name} watcher: {e}")
                time.sleep(5)

    def watch_pod_autoscalers(self) -> None:
        """Watch for PodAutoscaler events in a loop."""
        self._watch_loop(
            "PodAutoscaler",
            lambda: self.pa_client.watch(self.config.namespace, WATCH_TIMEOUT_SECONDS),
            self.handle_pa_event,
        )

    def watch_vpas(self) -> None:
        """Watch for VPA events in a loop."""
        self._watch_loop(
            "VPA",
            lambda: self.vpa_client.watch(self.config.namespace, WATCH_TIMEOUT_SECONDS),
            self.handle_vpa_event,
        )

    def watch_config(self) -> None:
        """Watch the autoscaler ConfigMap in a loop."""
        def stream():
            w = watch.Watch()
            return w.stream(
                self.core_api.list_namespaced_config_map,
                namespace=self.config.configmap_namespace,
                field_selector=f"metadata.name={self.config.configmap_name}",
                timeout_seconds=WATCH_TIMEOUT_SECONDS,
            )

        self._watch_loop(
            "ConfigMap",
            stream,
            lambda event_type, cm: self.config_store.apply_configmap(
                event_type, {"data": cm.data}
            ),
        )

    def periodic_resync(self) -> None:
        """Periodically enqueue all PodAutoscalers."""
        logger.info(f"Starting periodic resync (interval: {self.config.resync_interval}s)")

        while not self._stop_event.wait(self.config.resync_interval):
            self.global_resync()

    def run_worker(self) -> None:
        """Process keys until the queue shuts down."""
        while not self.queue.shutting_down:
            self.process_next(timeout=1.0)

    def start(self) -> None:
        """Start watcher, resync and worker threads."""
        logger.info("=" * 60)
        logger.info("Starting VPA PodAutoscaler Controller")
        logger.info("=" * 60)
        logger.info(f"Namespace: {self.config.namespace or 'all namespaces'}")
        logger.info(f"Workers: {self.config.workers}")

        self.load_config()
        self.global_resync()

        targets = [
            ("pa-watcher", self.watch_pod_autoscalers),
            ("vpa-watcher", self.watch_vpas),
            ("config-watcher", self.watch_config),
            ("periodic-resync", self.periodic_resync),
        ]
        targets += [(f"worker-{i}", self.run_worker) for i in range(self.config.workers)]

        for name, target in targets:
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)

    def run(self) -> None:
        """Run the controller until interrupted."""
        self.start()
        logger.info("Controller is running. Press Ctrl+C to stop.")

        try:
            while not self._stop_event.is_set():
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("Shutdown requested...")
            self.stop()

    def stop(self) -> None:
        """Stop the controller."""
        logger.info("Stopping controller...")
        self._stop_event.set()
        self.queue.shut_down()
