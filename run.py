#!/usr/bin/env python3
"""
VPA PodAutoscaler Controller - Entry Point

A Kubernetes controller that keeps a VerticalPodAutoscaler in sync with
every VPA-class Knative PodAutoscaler and copies the VPA's recommendations
back into the PodAutoscaler status.

Usage:
    python run.py [--namespace NAMESPACE] [--workers N] [--in-cluster]
"""

import argparse
import logging
import sys

from kubernetes import config

from vpa_controller.config import ControllerConfig
from vpa_controller.controller import VPAController

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="VPA PodAutoscaler Controller - Sync VPAs and recommendations for PodAutoscalers"
    )
    parser.add_argument(
        "--namespace", "-n",
        default=None,
        help="Namespace to watch (default: all namespaces)"
    )
    parser.add_argument(
        "--workers", "-w",
        type=int,
        default=None,
        help="Number of reconcile worker threads"
    )
    parser.add_argument(
        "--in-cluster",
        action="store_true",
        help="Use in-cluster config (for running inside Kubernetes)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose/debug logging"
    )

    args = parser.parse_args()

    # Set log level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Load Kubernetes configuration
    try:
        if args.in_cluster:
            config.load_incluster_config()
            logger.info("Loaded in-cluster configuration")
        else:
            config.load_kube_config()
            logger.info("Loaded kubeconfig from default location")
    except Exception as e:
        logger.error(f"Failed to load Kubernetes config: {e}")
        sys.exit(1)

    controller_config = ControllerConfig.from_env()
    if args.namespace is not None:
        controller_config.namespace = args.namespace
    if args.workers is not None:
        controller_config.workers = args.workers

    # Create and run controller
    controller = VPAController(config=controller_config)

    try:
        controller.run()
    except KeyboardInterrupt:
        controller.stop()
        logger.info("Controller stopped")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Controller error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
