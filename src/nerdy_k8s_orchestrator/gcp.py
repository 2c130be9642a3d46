from __future__ import annotations

from dataclasses import replace
import logging
from typing import Any, Callable, Sequence
import uuid

import google.auth
from google.auth.exceptions import GoogleAuthError
from googleapiclient import discovery
from googleapiclient.errors import HttpError
from kubernetes import client

from .driver import (
    PV_NAME_PREFIX,
    BackupCapability,
    DriverConfigurationError,
    DriverError,
    MigrationCapability,
    ProviderError,
    ProvisionedVolumeDriver,
    RestoreCapability,
)
from .models import (
    ApplicationBackup,
    ApplicationBackupVolumeInfo,
    ApplicationRestore,
    ApplicationRestoreVolumeInfo,
)
from .status import StatusMapping, VolumeOperationStatus

logger = logging.getLogger(__name__)

DRIVER_NAME = "gce"
PROVISIONERS = frozenset({"kubernetes.io/gce-pd", "pd.csi.storage.gke.io"})
COMPUTE_SCOPE = "https://www.googleapis.com/auth/compute"
SNAPSHOT_NAME_PREFIX = "stork-snapshot-"
ZONE_LABELS = ("topology.kubernetes.io/zone", "failure-domain.beta.kubernetes.io/zone")

SNAPSHOT_STATUS = StatusMapping(
    in_progress=frozenset({"CREATING", "UPLOADING"}),
    successful=frozenset({"READY"}),
    failed=frozenset({"FAILED", "DELETING"}),
)
DISK_STATUS = StatusMapping(
    in_progress=frozenset({"CREATING", "RESTORING"}),
    successful=frozenset({"READY"}),
    failed=frozenset({"FAILED", "DELETING"}),
)


class GcpDriver(ProvisionedVolumeDriver, BackupCapability, RestoreCapability, MigrationCapability):
    """Persistent disk snapshot driver backed by the Compute Engine API."""

    name = DRIVER_NAME
    provisioners = PROVISIONERS

    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        storage_api: client.StorageV1Api,
        compute: Any,
        project: str,
        zone: str | None = None,
        name_factory: Callable[[], str] | None = None,
    ) -> None:
        super().__init__(core_api=core_api, storage_api=storage_api)
        self._compute = compute
        self._project = project
        self._zone = zone
        self._name_factory = name_factory or (lambda: str(uuid.uuid4()))

    @classmethod
    def create(
        cls,
        *,
        core_api: client.CoreV1Api,
        storage_api: client.StorageV1Api,
        project: str | None = None,
        zone: str | None = None,
    ) -> GcpDriver:
        try:
            credentials, default_project = google.auth.default(scopes=[COMPUTE_SCOPE])
        except GoogleAuthError as error:
            raise DriverConfigurationError(f"Unable to load Google credentials: {error}") from error
        project = project or default_project
        if not project:
            raise DriverConfigurationError("GCE project is not configured and could not be detected")
        compute = discovery.build("compute", "v1", credentials=credentials, cache_discovery=False)
        return cls(core_api=core_api, storage_api=storage_api, compute=compute, project=project, zone=zone)

    def _has_native_volume_source(self, pv: client.V1PersistentVolume) -> bool:
        return bool(pv.spec and pv.spec.gce_persistent_disk)

    def start_backup(
        self,
        backup: ApplicationBackup,
        claims: Sequence[client.V1PersistentVolumeClaim],
    ) -> list[ApplicationBackupVolumeInfo]:
        volume_infos: list[ApplicationBackupVolumeInfo] = []
        for claim in claims:
            namespace = claim.metadata.namespace
            claim_name = claim.metadata.name
            if claim.metadata.deletion_timestamp is not None:
                logger.warning("Ignoring PVC %s/%s which is being deleted", namespace, claim_name)
                continue

            pv = self._read_bound_volume(claim)
            disk = _disk_name(pv)
            if not disk:
                raise DriverError(f"PV {pv.metadata.name} for PVC {namespace}/{claim_name} has no persistent disk")
            zone = self._volume_zone(pv)
            snapshot_name = f"{SNAPSHOT_NAME_PREFIX}{self._name_factory()}"
            body = {
                "name": snapshot_name,
                "labels": {
                    "created-by": "stork",
                    "backup-uid": backup.metadata.uid,
                    "source-pvc-name": claim_name,
                    "source-pvc-namespace": namespace,
                },
            }
            self._execute(
                f"create snapshot of disk {disk} (PVC: {claim_name}, Namespace: {namespace})",
                self._compute.disks().createSnapshot(project=self._project, zone=zone, disk=disk, body=body),
            )
            volume_infos.append(
                ApplicationBackupVolumeInfo(
                    persistent_volume_claim=claim_name,
                    namespace=namespace,
                    driver_name=self.name,
                    volume=disk,
                    backup_id=snapshot_name,
                    zones=(zone,),
                    status=VolumeOperationStatus.IN_PROGRESS,
                    reason="Volume backup started",
                )
            )
        return volume_infos

    def get_backup_status(self, backup: ApplicationBackup) -> list[ApplicationBackupVolumeInfo]:
        volume_infos: list[ApplicationBackupVolumeInfo] = []
        for info in backup.volumes:
            if info.driver_name != self.name:
                volume_infos.append(info)
                continue
            snapshot = self._execute(
                f"get snapshot {info.backup_id}",
                self._compute.snapshots().get(project=self._project, snapshot=_resource_name(info.backup_id)),
            )
            state = snapshot.get("status")
            status = SNAPSHOT_STATUS.resolve(state)
            backup_id = info.backup_id
            if status == VolumeOperationStatus.IN_PROGRESS:
                reason = f"Volume backup in progress: {state}"
            elif status == VolumeOperationStatus.SUCCESSFUL:
                backup_id = snapshot.get("selfLink") or backup_id
                reason = "Backup successful for volume"
            else:
                reason = f"Backup failed for volume: {state}"
            volume_infos.append(replace(info, backup_id=backup_id, status=status, reason=reason))
        return volume_infos

    def cancel_backup(self, backup: ApplicationBackup) -> None:
        self.delete_backup(backup)

    def delete_backup(self, backup: ApplicationBackup) -> None:
        for info in backup.volumes:
            if info.driver_name != self.name or not info.backup_id:
                continue
            self._execute_ignoring_not_found(
                f"delete snapshot {info.backup_id}",
                self._compute.snapshots().delete(project=self._project, snapshot=_resource_name(info.backup_id)),
            )

    def start_restore(
        self,
        restore: ApplicationRestore,
        backup_volume_infos: Sequence[ApplicationBackupVolumeInfo],
    ) -> list[ApplicationRestoreVolumeInfo]:
        volume_infos: list[ApplicationRestoreVolumeInfo] = []
        for backup_info in backup_volume_infos:
            restore_volume = f"{PV_NAME_PREFIX}{self._name_factory()}"
            if not backup_info.zones:
                raise DriverConfigurationError(
                    f"zone missing in backup for volume ({backup_info.namespace}) "
                    f"{backup_info.persistent_volume_claim}"
                )
            zone = backup_info.zones[0]
            body = {
                "name": restore_volume,
                "sourceSnapshot": _snapshot_source(backup_info.backup_id),
                "labels": {
                    "created-by": "stork",
                    "restore-uid": restore.metadata.uid,
                    "source-pvc-name": backup_info.persistent_volume_claim,
                    "source-pvc-namespace": backup_info.namespace,
                },
            }
            self._execute(
                f"create disk {restore_volume} from snapshot {backup_info.backup_id}",
                self._compute.disks().insert(project=self._project, zone=zone, body=body),
            )
            volume_infos.append(
                ApplicationRestoreVolumeInfo(
                    persistent_volume_claim=backup_info.persistent_volume_claim,
                    source_namespace=backup_info.namespace,
                    driver_name=self.name,
                    source_volume=backup_info.volume,
                    restore_volume=restore_volume,
                    zones=backup_info.zones,
                    status=VolumeOperationStatus.IN_PROGRESS,
                    reason="Volume restore started",
                )
            )
        return volume_infos

    def get_restore_status(self, restore: ApplicationRestore) -> list[ApplicationRestoreVolumeInfo]:
        volume_infos: list[ApplicationRestoreVolumeInfo] = []
        for info in restore.volumes:
            if info.driver_name != self.name:
                volume_infos.append(info)
                continue
            disk = self._execute(
                f"get disk {info.restore_volume}",
                self._compute.disks().get(project=self._project, zone=self._restore_zone(info), disk=info.restore_volume),
            )
            state = disk.get("status")
            status = DISK_STATUS.resolve(state)
            if status == VolumeOperationStatus.IN_PROGRESS:
                reason = f"Volume restore in progress: {state}"
            elif status == VolumeOperationStatus.SUCCESSFUL:
                reason = "Restore successful for volume"
            else:
                reason = f"Restore failed for volume: {state}"
            volume_infos.append(replace(info, status=status, reason=reason))
        return volume_infos

    def cancel_restore(self, restore: ApplicationRestore) -> None:
        for info in restore.volumes:
            if info.driver_name != self.name or not info.restore_volume:
                continue
            self._execute_ignoring_not_found(
                f"delete disk {info.restore_volume}",
                self._compute.disks().delete(project=self._project, zone=self._restore_zone(info), disk=info.restore_volume),
            )

    def update_migrated_persistent_volume_spec(self, pv: client.V1PersistentVolume) -> client.V1PersistentVolume:
        if pv.spec.csi is not None and pv.spec.csi.driver:
            pv.spec.csi.volume_handle = pv.metadata.name
            return pv
        if pv.spec.gce_persistent_disk is None:
            pv.spec.gce_persistent_disk = client.V1GCEPersistentDiskVolumeSource(pd_name=pv.metadata.name)
            return pv
        pv.spec.gce_persistent_disk.pd_name = pv.metadata.name
        return pv

    def _volume_zone(self, pv: client.V1PersistentVolume) -> str:
        labels = (pv.metadata.labels if pv.metadata else None) or {}
        for label in ZONE_LABELS:
            if labels.get(label):
                return labels[label]
        handle_zone = _csi_handle_part(pv, "zones")
        if handle_zone:
            return handle_zone
        if self._zone:
            return self._zone
        raise DriverConfigurationError(f"Unable to determine the zone of PV {pv.metadata.name}")

    def _restore_zone(self, info: ApplicationRestoreVolumeInfo) -> str:
        if info.zones:
            return info.zones[0]
        if self._zone:
            return self._zone
        raise DriverConfigurationError(f"zone missing for restored volume {info.restore_volume}")

    def _execute(self, operation: str, request: Any) -> dict[str, Any]:
        try:
            return request.execute()
        except HttpError as error:
            raise ProviderError(
                operation=operation,
                reason=str(error),
                code=str(error.resp.status),
            ) from error

    def _execute_ignoring_not_found(self, operation: str, request: Any) -> None:
        try:
            self._execute(operation, request)
        except ProviderError as error:
            if error.code == "404":
                logger.debug("Ignoring missing resource while trying to %s", operation)
                return
            raise


def _disk_name(pv: client.V1PersistentVolume) -> str:
    if pv.spec.gce_persistent_disk is not None:
        return pv.spec.gce_persistent_disk.pd_name or ""
    return _csi_handle_part(pv, "disks")


def _csi_handle_part(pv: client.V1PersistentVolume, segment: str) -> str:
    # projects/<project>/zones/<zone>/disks/<name>
    if pv.spec.csi is None or not pv.spec.csi.volume_handle:
        return ""
    parts = pv.spec.csi.volume_handle.split("/")
    for index, part in enumerate(parts[:-1]):
        if part == segment:
            return parts[index + 1]
    return ""


def _resource_name(value: str) -> str:
    return value.rstrip("/").rsplit("/", 1)[-1]


def _snapshot_source(backup_id: str) -> str:
    if backup_id.startswith(("https://", "projects/", "global/")):
        return backup_id
    return f"global/snapshots/{backup_id}"
