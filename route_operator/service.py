#!/usr/bin/env python3
"""
Route Operator Service
Reconciles Route CRDs into backend Services and Contour HTTPProxies
"""

import logging
import signal
import sys
import threading

from kubernetes import config as kube_config

from route_operator.config import OperatorConfig
from route_operator.controller import Controller
from route_operator.store import KubeStore

logger = logging.getLogger(__name__)

# Set by the signal handler for graceful shutdown
shutdown_requested = threading.Event()


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    logger.info(f"[shutdown] Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested.set()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
        stream=sys.stdout
    )


def load_kubernetes_config() -> None:
    # Service account first, local kubeconfig for development
    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        kube_config.load_kube_config()


def main() -> int:
    try:
        operator_config = OperatorConfig.from_env()
    except ValueError as e:
        configure_logging('INFO')
        logger.error(f"FATAL ERROR: invalid configuration: {e}")
        return 1

    configure_logging(operator_config.log_level)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        load_kubernetes_config()
        controller = Controller(KubeStore(), operator_config)
        controller.start()
        logger.info(f"Route Operator service watching "
                    f"{operator_config.watch_namespace or 'all namespaces'}")

        shutdown_requested.wait()
        controller.stop()
    except Exception as e:
        logger.error(f"FATAL ERROR: {e}", exc_info=True)
        return 1

    logger.info("[shutdown] Service stopped cleanly")
    return 0


if __name__ == '__main__':
    sys.exit(main())
