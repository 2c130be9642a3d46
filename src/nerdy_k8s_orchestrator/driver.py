from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from typing import ClassVar, Iterable, Sequence, TypeVar

from kubernetes import client
from kubernetes.client import ApiException

from .models import (
    ApplicationBackup,
    ApplicationBackupVolumeInfo,
    ApplicationRestore,
    ApplicationRestoreVolumeInfo,
    ClusterDomains,
    ClusterDomainUpdate,
    ClusterPair,
)

logger = logging.getLogger(__name__)

PVC_PROVISIONER_ANNOTATIONS = (
    "volume.beta.kubernetes.io/storage-provisioner",
    "volume.kubernetes.io/storage-provisioner",
)
PVC_STORAGE_CLASS_ANNOTATION = "volume.beta.kubernetes.io/storage-class"
PV_PROVISIONED_BY_ANNOTATION = "pv.kubernetes.io/provisioned-by"
PV_NAME_PREFIX = "pvc-"

C = TypeVar("C", bound="Capability")


class DriverError(RuntimeError):
    """Base error for storage driver failures."""


class UnsupportedCapabilityError(DriverError):
    """Raised when a driver does not implement a requested capability.

    Callers treat this as terminal for the object being reconciled.
    """

    def __init__(self, *, driver: str, capability: str) -> None:
        super().__init__(f"Driver '{driver}' does not support {capability}")
        self.driver = driver
        self.capability = capability


class ProviderError(DriverError):
    """Raised when a cloud provider call fails."""

    def __init__(self, *, operation: str, reason: str, code: str | None = None) -> None:
        super().__init__(f"Provider call failed while trying to {operation}: {reason}")
        self.operation = operation
        self.code = code


class DriverConfigurationError(DriverError):
    """Raised when an operation lacks information it needs, such as a zone."""


class Capability(ABC):
    capability_name: ClassVar[str]


class BackupCapability(Capability):
    capability_name: ClassVar[str] = "backup"

    @abstractmethod
    def start_backup(
        self,
        backup: ApplicationBackup,
        claims: Sequence[client.V1PersistentVolumeClaim],
    ) -> list[ApplicationBackupVolumeInfo]:
        """Start a snapshot for each claim. Claims being deleted are skipped."""

    @abstractmethod
    def get_backup_status(self, backup: ApplicationBackup) -> list[ApplicationBackupVolumeInfo]:
        """Refresh this driver's entries. Entries of other drivers are returned unchanged."""

    @abstractmethod
    def cancel_backup(self, backup: ApplicationBackup) -> None: ...

    @abstractmethod
    def delete_backup(self, backup: ApplicationBackup) -> None: ...


class RestoreCapability(Capability):
    capability_name: ClassVar[str] = "restore"

    @abstractmethod
    def start_restore(
        self,
        restore: ApplicationRestore,
        backup_volume_infos: Sequence[ApplicationBackupVolumeInfo],
    ) -> list[ApplicationRestoreVolumeInfo]: ...

    @abstractmethod
    def get_restore_status(self, restore: ApplicationRestore) -> list[ApplicationRestoreVolumeInfo]: ...

    @abstractmethod
    def cancel_restore(self, restore: ApplicationRestore) -> None: ...


class ClusterPairCapability(Capability):
    capability_name: ClassVar[str] = "cluster pairing"

    @abstractmethod
    def create_pair(self, pair: ClusterPair) -> str:
        """Pair storage with the remote cluster and return the remote storage id."""

    @abstractmethod
    def delete_pair(self, pair: ClusterPair) -> None: ...


class ClusterDomainCapability(Capability):
    capability_name: ClassVar[str] = "cluster domains"

    @abstractmethod
    def activate_cluster_domain(self, update: ClusterDomainUpdate) -> None: ...

    @abstractmethod
    def deactivate_cluster_domain(self, update: ClusterDomainUpdate) -> None: ...

    @abstractmethod
    def get_cluster_domains(self) -> ClusterDomains: ...


class MigrationCapability(Capability):
    capability_name: ClassVar[str] = "migration"

    @abstractmethod
    def update_migrated_persistent_volume_spec(self, pv: client.V1PersistentVolume) -> client.V1PersistentVolume:
        """Point a migrated volume's native reference at the volume itself."""


CAPABILITIES: tuple[type[Capability], ...] = (
    BackupCapability,
    RestoreCapability,
    ClusterPairCapability,
    ClusterDomainCapability,
    MigrationCapability,
)


class Driver(ABC):
    """A storage backend.

    Concrete drivers mix in only the capability interfaces they implement;
    reconcilers ask for a capability through ``require`` instead of calling
    operations the backend may not have.
    """

    name: ClassVar[str]

    @abstractmethod
    def owns_volume_claim(self, claim: client.V1PersistentVolumeClaim) -> bool: ...

    @property
    def capabilities(self) -> frozenset[type[Capability]]:
        return frozenset(capability for capability in CAPABILITIES if isinstance(self, capability))

    def supports(self, capability: type[Capability]) -> bool:
        return isinstance(self, capability)

    def require(self, capability: type[C]) -> C:
        if not isinstance(self, capability):
            raise UnsupportedCapabilityError(driver=self.name, capability=capability.capability_name)
        return self

    def __str__(self) -> str:
        return self.name


class ProvisionedVolumeDriver(Driver):
    """Ownership checks shared by drivers backed by a Kubernetes provisioner."""

    provisioners: ClassVar[frozenset[str]]

    def __init__(self, *, core_api: client.CoreV1Api, storage_api: client.StorageV1Api) -> None:
        self._core_api = core_api
        self._storage_api = storage_api

    def owns_volume_claim(self, claim: client.V1PersistentVolumeClaim) -> bool:
        provisioner = _claim_provisioner_annotation(claim)
        if not provisioner:
            provisioner = self._storage_class_provisioner(claim)
        if not provisioner:
            volume_name = claim.spec.volume_name if claim.spec else None
            if not volume_name:
                return False
            try:
                pv = self._core_api.read_persistent_volume(name=volume_name)
            except ApiException as error:
                logger.warning(
                    "Unable to read PV %s for PVC %s/%s: API status %s",
                    volume_name,
                    claim.metadata.namespace,
                    claim.metadata.name,
                    error.status,
                )
                return False
            return self.owns_persistent_volume(pv)
        if provisioner not in self.provisioners:
            logger.debug("Provisioner %s is not handled by driver %s", provisioner, self.name)
            return False
        return True

    def owns_persistent_volume(self, pv: client.V1PersistentVolume) -> bool:
        annotations = (pv.metadata.annotations if pv.metadata else None) or {}
        provisioner = annotations.get(PV_PROVISIONED_BY_ANNOTATION)
        if provisioner:
            return provisioner in self.provisioners
        return self._has_native_volume_source(pv)

    @abstractmethod
    def _has_native_volume_source(self, pv: client.V1PersistentVolume) -> bool: ...

    def _storage_class_provisioner(self, claim: client.V1PersistentVolumeClaim) -> str | None:
        class_name = storage_class_name(claim)
        if not class_name:
            return None
        try:
            storage_class = self._storage_api.read_storage_class(name=class_name)
        except ApiException as error:
            logger.warning(
                "Unable to read storage class %s for PVC %s: API status %s",
                class_name,
                claim.metadata.name,
                error.status,
            )
            return None
        return storage_class.provisioner

    def _read_bound_volume(self, claim: client.V1PersistentVolumeClaim) -> client.V1PersistentVolume:
        namespace = claim.metadata.namespace
        volume_name = claim.spec.volume_name if claim.spec else None
        if not volume_name:
            raise DriverError(f"PVC {namespace}/{claim.metadata.name} is not bound to a PV")
        try:
            return self._core_api.read_persistent_volume(name=volume_name)
        except ApiException as error:
            raise DriverError(
                f"Unable to read PV {volume_name} for PVC {namespace}/{claim.metadata.name}: "
                f"API status {error.status} ({error.reason or 'no reason provided'})"
            ) from error


class DriverRegistry:
    """Explicit set of drivers built at process start and passed to reconcilers."""

    def __init__(self, drivers: Iterable[Driver] = ()) -> None:
        self._drivers: dict[str, Driver] = {}
        for driver in drivers:
            self.register(driver)

    def register(self, driver: Driver) -> None:
        if driver.name in self._drivers:
            raise ValueError(f"Driver '{driver.name}' is already registered")
        self._drivers[driver.name] = driver

    def get(self, name: str) -> Driver:
        try:
            return self._drivers[name]
        except KeyError as error:
            raise DriverError(f"Driver '{name}' is not registered") from error

    def names(self) -> list[str]:
        return sorted(self._drivers)

    def driver_for_claim(self, claim: client.V1PersistentVolumeClaim) -> Driver | None:
        for name in self.names():
            driver = self._drivers[name]
            if driver.owns_volume_claim(claim):
                return driver
        return None


def storage_class_name(claim: client.V1PersistentVolumeClaim) -> str | None:
    annotations = (claim.metadata.annotations if claim.metadata else None) or {}
    if annotations.get(PVC_STORAGE_CLASS_ANNOTATION):
        return annotations[PVC_STORAGE_CLASS_ANNOTATION]
    if claim.spec and claim.spec.storage_class_name:
        return claim.spec.storage_class_name
    return None


def _claim_provisioner_annotation(claim: client.V1PersistentVolumeClaim) -> str | None:
    annotations = (claim.metadata.annotations if claim.metadata else None) or {}
    for key in PVC_PROVISIONER_ANNOTATIONS:
        if annotations.get(key):
            return annotations[key]
    return None
