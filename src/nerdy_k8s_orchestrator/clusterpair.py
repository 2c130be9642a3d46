from __future__ import annotations

import logging
from typing import Any, Callable

from kubernetes import client, config
import yaml

from .controller import Request, Result
from .driver import ClusterPairCapability, Driver, DriverError, UnsupportedCapabilityError
from .events import EventRecorder
from .k8s import ObjectNotFoundError, ObjectStore
from .log import object_logger
from .models import ClusterPair, ClusterPairStatusType

logger = logging.getLogger(__name__)

CLEANUP_FINALIZER = "stork.libopenstorage.org/finalizer-cleanup"


class RemoteClusterError(RuntimeError):
    """Raised when the remote cluster of a pair cannot be reached."""


def kubeconfig_dict(raw_config: Any) -> dict[str, Any]:
    """Return a kubeconfig mapping usable by ``new_client_from_config_dict``.

    Accepts a YAML string or a mapping, with named sections either as lists
    (``kubectl config view`` form) or as mappings keyed by name.
    """
    if isinstance(raw_config, str):
        try:
            raw_config = yaml.safe_load(raw_config)
        except yaml.YAMLError as error:
            raise RemoteClusterError(f"Cluster pair config is not valid YAML: {error}") from error
    if not isinstance(raw_config, dict) or not raw_config:
        raise RemoteClusterError("Cluster pair config is empty")

    normalized = dict(raw_config)
    for section, item_key in (("clusters", "cluster"), ("contexts", "context"), ("users", "user")):
        value = normalized.get(section)
        if isinstance(value, dict):
            normalized[section] = [{"name": name, item_key: item} for name, item in value.items()]
    current = normalized.get("current-context") or normalized.get("currentContext")
    if current:
        normalized["current-context"] = current
    return normalized


def probe_remote_cluster(raw_config: Any) -> str:
    """Connect to the remote cluster and return its server version."""
    kubeconfig = kubeconfig_dict(raw_config)
    try:
        api_client = config.new_client_from_config_dict(kubeconfig, context=kubeconfig.get("current-context"))
    except Exception as error:  # pylint: disable=broad-except
        raise RemoteClusterError(f"Unable to load remote cluster config: {error}") from error
    try:
        version = client.VersionApi(api_client).get_code()
    except Exception as error:  # pylint: disable=broad-except
        raise RemoteClusterError(f"Unable to reach remote cluster: {error}") from error
    finally:
        api_client.close()
    return version.git_version


class ClusterPairReconciler:
    def __init__(
        self,
        *,
        store: ObjectStore,
        driver: Driver,
        events: EventRecorder,
        probe: Callable[[Any], str] = probe_remote_cluster,
    ) -> None:
        self.store = store
        self.driver = driver
        self.events = events
        self.probe = probe
        self._unsupported: set[str] = set()

    def reconcile(self, request: Request) -> Result | None:
        try:
            pair = self.store.get(ClusterPair, request.name, request.namespace)
        except ObjectNotFoundError:
            return None

        if pair.being_deleted:
            self._finalize(pair)
            return None

        if CLEANUP_FINALIZER not in pair.metadata.finalizers:
            pair.metadata.finalizers.append(CLEANUP_FINALIZER)
            pair = self.store.update(pair)

        pair = self._pair_storage(pair)
        self._pair_scheduler(pair)
        return None

    def _pair_storage(self, pair: ClusterPair) -> ClusterPair:
        before = (pair.storage_status, pair.remote_storage_id)
        if not pair.options:
            pair.storage_status = ClusterPairStatusType.NOT_PROVIDED
            if before[0] != pair.storage_status:
                self.events.normal(
                    pair,
                    pair.storage_status.value,
                    "Skipping storage pairing since no storage options provided",
                )
        elif pair.storage_status != ClusterPairStatusType.READY and not self._pairing_unsupported(pair):
            try:
                remote_id = self.driver.require(ClusterPairCapability).create_pair(pair)
            except UnsupportedCapabilityError as error:
                self._unsupported.add(pair.metadata.uid or pair.display_name)
                pair.storage_status = ClusterPairStatusType.ERROR
                self.events.warning(pair, pair.storage_status.value, str(error))
                object_logger(logger, pair).warning("Storage pairing not possible: %s", error)
            except DriverError as error:
                pair.storage_status = ClusterPairStatusType.ERROR
                self.events.warning(pair, pair.storage_status.value, str(error))
                object_logger(logger, pair).warning("Storage pairing failed: %s", error)
            else:
                pair.storage_status = ClusterPairStatusType.READY
                pair.remote_storage_id = remote_id
                self.events.normal(pair, pair.storage_status.value, "Storage successfully paired")

        if (pair.storage_status, pair.remote_storage_id) == before:
            return pair
        return self.store.update(pair)

    def _pairing_unsupported(self, pair: ClusterPair) -> bool:
        # Unsupported is terminal: an Error status is left alone instead of retried.
        if pair.storage_status != ClusterPairStatusType.ERROR:
            return False
        if (pair.metadata.uid or pair.display_name) in self._unsupported:
            return True
        return not self.driver.supports(ClusterPairCapability)

    def _pair_scheduler(self, pair: ClusterPair) -> ClusterPair:
        if pair.scheduler_status == ClusterPairStatusType.READY:
            return pair
        before = pair.scheduler_status
        try:
            version = self.probe(pair.config)
        except RemoteClusterError as error:
            pair.scheduler_status = ClusterPairStatusType.ERROR
            self.events.warning(pair, pair.scheduler_status.value, str(error))
            object_logger(logger, pair).warning("Scheduler pairing failed: %s", error)
        else:
            pair.scheduler_status = ClusterPairStatusType.READY
            self.events.normal(pair, pair.scheduler_status.value, "Scheduler successfully paired")
            object_logger(logger, pair).info("Paired with remote cluster running %s", version)

        if pair.scheduler_status == before:
            return pair
        return self.store.update(pair)

    def _finalize(self, pair: ClusterPair) -> None:
        if pair.remote_storage_id:
            try:
                self.driver.require(ClusterPairCapability).delete_pair(pair)
            except UnsupportedCapabilityError as error:
                object_logger(logger, pair).warning("Not removing storage pairing: %s", error)

        if CLEANUP_FINALIZER not in pair.metadata.finalizers:
            return
        pair.metadata.finalizers.remove(CLEANUP_FINALIZER)
        try:
            self.store.update(pair)
        except ObjectNotFoundError:
            pass
