"""Thread-safe store for the hot-reloadable autoscaler configuration."""

import logging
import threading
from typing import Any, Callable, Dict, Optional

from .config import AutoscalerConfig

logger = logging.getLogger(__name__)


class ConfigStore:
    """Holds the current AutoscalerConfig and notifies on change."""

    def __init__(
        self,
        initial: Optional[AutoscalerConfig] = None,
        on_change: Optional[Callable[[AutoscalerConfig], None]] = None,
    ):
        """
        Initialize the store.

        Args:
            initial: Starting configuration (defaults apply if None)
            on_change: Called with the new config after every effective change
        """
        self._config = initial or AutoscalerConfig.default()
        self._on_change = on_change
        self._lock = threading.RLock()

    def get(self) -> AutoscalerConfig:
        """Return the current configuration."""
        with self._lock:
            return self._config

    def set(self, config: AutoscalerConfig) -> bool:
        """
        Replace the configuration.

        Returns:
            True if the configuration changed
        """
        with self._lock:
            if config == self._config:
                return False
            self._config = config

        logger.info(f"Autoscaler configuration updated: {len(config.container_policies)} container policies")
        if self._on_change is not None:
            self._on_change(config)
        return True

    def apply_configmap(self, event_type: str, configmap: Dict[str, Any]) -> bool:
        """
        Handle a ConfigMap watch event.

        A deleted ConfigMap resets to defaults. Unparseable data is logged
        and the previous configuration stays in effect.

        Args:
            event_type: ADDED, MODIFIED, or DELETED
            configmap: ConfigMap as a dict (``data`` key is read)

        Returns:
            True if the configuration changed
        """
        if event_type == "DELETED":
            return self.set(AutoscalerConfig.default())

        try:
            config = AutoscalerConfig.from_configmap(configmap.get("data"))
        except ValueError as e:
            logger.error(f"Ignoring invalid autoscaler ConfigMap: {e}")
            return False
        return self.set(config)
