"""Command-line entry point: config, logging, client setup, signal handling."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from typing import List, Optional

from kubernetes import client
from kubernetes.config import ConfigException

from podsched.api import StatusServer
from podsched.cluster import ClusterGateway, load_cluster_config
from podsched.config import SchedulerConfig
from podsched.errors import ConfigError
from podsched.policy import POLICIES
from podsched.scheduler import Scheduler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
    # urllib3 logs every watch reconnect at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="podsched",
        description="Kubernetes scheduler that binds pending pods to label-matched nodes",
    )
    parser.add_argument("-n", "--name", dest="scheduler_name", default=None,
                        help="Scheduler name pods request via spec.schedulerName (default: my-scheduler)")
    parser.add_argument("-l", "--label", dest="node_selector", default=None,
                        help="Node label selector (default: my-sheduler-node=test-1)")
    parser.add_argument("--policy", choices=sorted(POLICIES), default=None,
                        help="Node selection policy (default: random)")
    parser.add_argument("--max-concurrency", type=int, default=None,
                        help="Maximum concurrent assignment attempts")
    parser.add_argument("--max-attempts", type=int, default=None,
                        help="Attempts per pod before a transient failure is abandoned")
    parser.add_argument("--status-port", type=int, default=None,
                        help="Serve /healthz, /status and /outcomes on this port")
    parser.add_argument("--config", default=None, help="YAML config file (or $PODSCHED_CONFIG)")
    parser.add_argument("--kubeconfig", default=None, help="Path to kubeconfig (default: in-cluster)")
    parser.add_argument("--log-level", default=None, help="Log level (or $LOG_LEVEL, default INFO)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = SchedulerConfig.load(
            path=args.config,
            overrides={
                "scheduler_name": args.scheduler_name,
                "node_selector": args.node_selector,
                "policy": args.policy,
                "max_concurrency": args.max_concurrency,
                "max_attempts": args.max_attempts,
                "status_port": args.status_port,
            },
        )
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    try:
        api_client = load_cluster_config(args.kubeconfig)
    except (ConfigException, OSError) as e:
        logger.error(f"Could not load Kubernetes config: {e}")
        return 1

    try:
        scheduler = Scheduler(config, ClusterGateway(client.CoreV1Api(api_client)))
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    status_server = None
    if config.status_port is not None:
        try:
            status_server = StatusServer(scheduler, port=config.status_port)
        except OSError as e:
            logger.error(f"Could not start status API on port {config.status_port}: {e}")
            return 1
        status_server.start()

    shutdown = threading.Event()

    def _on_signal(signum, frame) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        shutdown.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    logger.info(f"{config.scheduler_name} starting")
    scheduler.start()
    while not shutdown.wait(1.0):
        pass

    clean = scheduler.stop()
    if status_server:
        status_server.stop()
    logger.info(f"{config.scheduler_name} stopped ({'clean' if clean else 'grace period exceeded'})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
