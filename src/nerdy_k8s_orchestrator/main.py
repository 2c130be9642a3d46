from __future__ import annotations

import argparse
from dataclasses import replace
import logging
import signal
import sys
import threading

from .aws import AwsDriver
from .clusterdomains import ClusterDomainUpdateReconciler
from .clusterpair import ClusterPairReconciler
from .config import AppConfig, ConfigurationError, load_app_config, validate_app_config
from .controller import ControllerManager, JobSource, RecordSource, WatchLoop
from .driver import Driver, DriverError, DriverRegistry
from .events import EventRecorder
from .gcp import GcpDriver
from .k8s import KubernetesAuthenticationError, KubernetesClients, ObjectStore, load_kubernetes_clients
from .log import configure_logging
from .migrationschedule import MigrationScheduleReconciler
from .models import ClusterDomainUpdate, ClusterPair, MigrationSchedule, VolumeImport
from .schedule import SchedulePolicyEvaluator
from .volumeimport import JOB_SELECTOR, VolumeImportReconciler

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nerdy-k8s-orchestrator",
        description="Run the storage orchestration controllers.",
    )
    parser.add_argument("--config", help="YAML file overriding NKO_* environment settings")
    parser.add_argument("--driver", help="Storage driver to use (aws or gce)")
    parser.add_argument("--namespace", help="Only watch objects in this namespace")
    parser.add_argument("--kubeconfig", help="Path to a kubeconfig file")
    parser.add_argument("--context", help="Kubeconfig context to use")
    parser.add_argument("--in-cluster", action="store_true", default=None, help="Use in-cluster credentials")
    parser.add_argument("--log-level", help="Logging level")
    return parser


def apply_arguments(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    overrides = {
        "driver": args.driver,
        "namespace": args.namespace,
        "kubeconfig_path": args.kubeconfig,
        "context": args.context,
        "in_cluster": args.in_cluster,
        "log_level": args.log_level,
    }
    return replace(config, **{key: value for key, value in overrides.items() if value is not None})


def build_driver_registry(config: AppConfig, clients: KubernetesClients) -> DriverRegistry:
    registry = DriverRegistry()
    if config.driver == AwsDriver.name:
        registry.register(
            AwsDriver.create(core_api=clients.core_api, storage_api=clients.storage_api, region=config.aws_region)
        )
    elif config.driver == GcpDriver.name:
        registry.register(
            GcpDriver.create(
                core_api=clients.core_api,
                storage_api=clients.storage_api,
                project=config.gce_project,
                zone=config.gce_zone,
            )
        )
    return registry


def build_manager(config: AppConfig, clients: KubernetesClients, driver: Driver) -> ControllerManager:
    store = ObjectStore(clients.custom_api)
    events = EventRecorder(clients.core_api)
    loop_options = {"resync_seconds": config.resync_seconds, "max_backoff_seconds": config.max_backoff_seconds}

    pairs = ClusterPairReconciler(store=store, driver=driver, events=events)
    domains = ClusterDomainUpdateReconciler(store=store, driver=driver, events=events)
    schedules = MigrationScheduleReconciler(
        store=store,
        driver=driver,
        events=events,
        evaluator=SchedulePolicyEvaluator(store),
        domain_retry_count=config.domain_retry_count,
        domain_retry_interval_seconds=config.domain_retry_interval_seconds,
    )
    imports = VolumeImportReconciler(
        store=store,
        core_api=clients.core_api,
        batch_api=clients.batch_api,
        events=events,
        rsync_image=config.rsync_image,
    )

    return ControllerManager(
        [
            WatchLoop(RecordSource(store, ClusterPair, config.namespace), pairs.reconcile, **loop_options),
            WatchLoop(RecordSource(store, ClusterDomainUpdate), domains.reconcile, **loop_options),
            WatchLoop(RecordSource(store, MigrationSchedule, config.namespace), schedules.reconcile, **loop_options),
            WatchLoop(RecordSource(store, VolumeImport, config.namespace), imports.reconcile, **loop_options),
            WatchLoop(
                JobSource(clients.batch_api, label_selector=JOB_SELECTOR, namespace=config.namespace),
                imports.reconcile_job,
                **loop_options,
            ),
        ]
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = apply_arguments(load_app_config(args.config), args)
        validate_app_config(config)
    except ConfigurationError as error:
        print(f"error: {error}", file=sys.stderr)
        return 2

    configure_logging(config.log_level)
    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=config.kubeconfig_path,
            context=config.context,
            in_cluster=config.in_cluster,
        )
        driver = build_driver_registry(config, clients).get(config.driver)
    except (KubernetesAuthenticationError, DriverError, ConfigurationError) as error:
        logger.error("%s", error)
        return 1

    stop_event = threading.Event()

    def _stop(signum: int, _frame: object) -> None:
        logger.info("Received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    logger.info("Starting controllers with driver %s", driver)
    build_manager(config, clients, driver).run(stop_event)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
