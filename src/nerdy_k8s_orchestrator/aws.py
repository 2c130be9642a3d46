from __future__ import annotations

from dataclasses import replace
import logging
import re
from typing import Any, Callable, Sequence
import uuid

import boto3
from botocore.exceptions import BotoCoreError, ClientError
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

DRIVER_NAME = "aws"
PROVISIONERS = frozenset({"kubernetes.io/aws-ebs", "ebs.csi.aws.com"})

CREATED_BY_TAG = "created-by"
CREATED_BY_VALUE = "stork"
BACKUP_UID_TAG = "backup-uid"
RESTORE_UID_TAG = "restore-uid"
SOURCE_PVC_NAME_TAG = "source-pvc-name"
SOURCE_PVC_NAMESPACE_TAG = "source-pvc-namespace"
NAME_TAG = "Name"
SNAPSHOT_NAME_PREFIX = "stork-snapshot-"

SNAPSHOT_NOT_FOUND_CODE = "InvalidSnapshot.NotFound"
VOLUME_NOT_FOUND_CODE = "InvalidVolume.NotFound"

SNAPSHOT_STATUS = StatusMapping(
    in_progress=frozenset({"pending", "recovering"}),
    successful=frozenset({"completed"}),
    failed=frozenset({"error", "recoverable"}),
)
VOLUME_STATUS = StatusMapping(
    in_progress=frozenset({"creating"}),
    successful=frozenset({"available", "in-use"}),
    failed=frozenset({"deleting", "deleted", "error"}),
)

_EBS_VOLUME_ID = re.compile(r"vol-.*")
_BACKUP_TAG_KEYS = frozenset({NAME_TAG, CREATED_BY_TAG, BACKUP_UID_TAG, SOURCE_PVC_NAME_TAG, SOURCE_PVC_NAMESPACE_TAG})
_RESTORE_TAG_KEYS = frozenset({NAME_TAG, CREATED_BY_TAG, RESTORE_UID_TAG, SOURCE_PVC_NAME_TAG, SOURCE_PVC_NAMESPACE_TAG})


def ebs_volume_id(value: str) -> str:
    """Extract ``vol-...`` from a native volume reference such as ``aws://us-east-1a/vol-123``."""
    match = _EBS_VOLUME_ID.search(value or "")
    return match.group(0) if match else ""


class AwsDriver(ProvisionedVolumeDriver, BackupCapability, RestoreCapability, MigrationCapability):
    """EBS snapshot driver backed by the EC2 API."""

    name = DRIVER_NAME
    provisioners = PROVISIONERS

    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        storage_api: client.StorageV1Api,
        ec2_client: Any,
        name_factory: Callable[[], str] | None = None,
    ) -> None:
        super().__init__(core_api=core_api, storage_api=storage_api)
        self._ec2 = ec2_client
        self._name_factory = name_factory or (lambda: f"{PV_NAME_PREFIX}{uuid.uuid4()}")

    @classmethod
    def create(
        cls,
        *,
        core_api: client.CoreV1Api,
        storage_api: client.StorageV1Api,
        region: str | None = None,
    ) -> AwsDriver:
        try:
            ec2_client = boto3.client("ec2", region_name=region)
        except BotoCoreError as error:
            raise DriverConfigurationError(f"Unable to create EC2 client: {error}") from error
        return cls(core_api=core_api, storage_api=storage_api, ec2_client=ec2_client)

    def _has_native_volume_source(self, pv: client.V1PersistentVolume) -> bool:
        return bool(pv.spec and pv.spec.aws_elastic_block_store)

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
            volume = pv.metadata.name
            native_id = _native_volume_reference(pv)
            volume_id = ebs_volume_id(native_id)
            if not volume_id:
                raise DriverError(f"PV {volume} for PVC {namespace}/{claim_name} has no EBS volume id")
            ebs_volume = self._describe_volume(volume_id)

            tags = [
                _tag(CREATED_BY_TAG, CREATED_BY_VALUE),
                _tag(BACKUP_UID_TAG, backup.metadata.uid),
                _tag(SOURCE_PVC_NAME_TAG, claim_name),
                _tag(SOURCE_PVC_NAMESPACE_TAG, namespace),
                _tag(NAME_TAG, f"{SNAPSHOT_NAME_PREFIX}{volume}"),
            ]
            tags.extend(_propagated_tags(ebs_volume.get("Tags"), _BACKUP_TAG_KEYS))
            snapshot = self._call(
                f"create snapshot of {volume_id}",
                self._ec2.create_snapshot,
                VolumeId=volume_id,
                Description=(
                    f"Created by stork for {backup.metadata.name} for PVC {claim_name} "
                    f"Namespace {namespace} Volume: {native_id}"
                ),
                TagSpecifications=[{"ResourceType": "snapshot", "Tags": tags}],
            )
            volume_infos.append(
                ApplicationBackupVolumeInfo(
                    persistent_volume_claim=claim_name,
                    namespace=namespace,
                    driver_name=self.name,
                    volume=volume,
                    backup_id=snapshot["SnapshotId"],
                    zones=(ebs_volume["AvailabilityZone"],),
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
            snapshot = self._describe_snapshot(info.backup_id)
            state = snapshot.get("State")
            status = SNAPSHOT_STATUS.resolve(state)
            if status == VolumeOperationStatus.IN_PROGRESS:
                reason = f"Volume backup in progress: {state} ({snapshot.get('Progress', '')})"
            elif status == VolumeOperationStatus.SUCCESSFUL:
                reason = "Backup successful for volume"
            else:
                reason = f"Backup failed for volume: {state}"
            volume_infos.append(replace(info, status=status, reason=reason))
        return volume_infos

    def cancel_backup(self, backup: ApplicationBackup) -> None:
        self.delete_backup(backup)

    def delete_backup(self, backup: ApplicationBackup) -> None:
        for info in backup.volumes:
            if info.driver_name != self.name or not info.backup_id:
                continue
            try:
                self._call(f"delete snapshot {info.backup_id}", self._ec2.delete_snapshot, SnapshotId=info.backup_id)
            except ProviderError as error:
                if error.code == SNAPSHOT_NOT_FOUND_CODE:
                    continue
                raise

    def start_restore(
        self,
        restore: ApplicationRestore,
        backup_volume_infos: Sequence[ApplicationBackupVolumeInfo],
    ) -> list[ApplicationRestoreVolumeInfo]:
        volume_infos: list[ApplicationRestoreVolumeInfo] = []
        for backup_info in backup_volume_infos:
            restore_name = self._name_factory()
            if not backup_info.zones:
                raise DriverConfigurationError(
                    f"zone missing in backup for volume ({backup_info.namespace}) "
                    f"{backup_info.persistent_volume_claim}"
                )
            snapshot = self._describe_snapshot(backup_info.backup_id)
            tags = [
                _tag(CREATED_BY_TAG, CREATED_BY_VALUE),
                _tag(RESTORE_UID_TAG, restore.metadata.uid),
                _tag(SOURCE_PVC_NAME_TAG, backup_info.persistent_volume_claim),
                _tag(SOURCE_PVC_NAMESPACE_TAG, backup_info.namespace),
                _tag(NAME_TAG, restore_name),
            ]
            tags.extend(_propagated_tags(snapshot.get("Tags"), _RESTORE_TAG_KEYS))
            created = self._call(
                f"create volume from snapshot {backup_info.backup_id}",
                self._ec2.create_volume,
                SnapshotId=backup_info.backup_id,
                AvailabilityZone=backup_info.zones[0],
                TagSpecifications=[{"ResourceType": "volume", "Tags": tags}],
            )
            volume_infos.append(
                ApplicationRestoreVolumeInfo(
                    persistent_volume_claim=backup_info.persistent_volume_claim,
                    source_namespace=backup_info.namespace,
                    driver_name=self.name,
                    source_volume=backup_info.volume,
                    restore_volume=created["VolumeId"],
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
            volume = self._describe_volume(info.restore_volume)
            state = volume.get("State")
            status = VOLUME_STATUS.resolve(state)
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
            try:
                self._call(f"delete volume {info.restore_volume}", self._ec2.delete_volume, VolumeId=info.restore_volume)
            except ProviderError as error:
                if error.code == VOLUME_NOT_FOUND_CODE:
                    continue
                raise

    def update_migrated_persistent_volume_spec(self, pv: client.V1PersistentVolume) -> client.V1PersistentVolume:
        if pv.spec.csi is not None:
            pv.spec.csi.volume_handle = pv.metadata.name
            return pv
        if pv.spec.aws_elastic_block_store is None:
            raise DriverError(f"PV {pv.metadata.name} is not an EBS volume")
        pv.spec.aws_elastic_block_store.volume_id = pv.metadata.name
        return pv

    def _describe_volume(self, volume_id: str) -> dict[str, Any]:
        output = self._call(f"describe volume {volume_id}", self._ec2.describe_volumes, VolumeIds=[volume_id])
        volumes = output.get("Volumes") or []
        if len(volumes) != 1:
            raise DriverError(f"received {len(volumes)} volumes for {volume_id}")
        return volumes[0]

    def _describe_snapshot(self, snapshot_id: str) -> dict[str, Any]:
        output = self._call(
            f"describe snapshot {snapshot_id}",
            self._ec2.describe_snapshots,
            SnapshotIds=[snapshot_id],
        )
        snapshots = output.get("Snapshots") or []
        if len(snapshots) != 1:
            raise DriverError(f"received {len(snapshots)} snapshots for {snapshot_id}")
        return snapshots[0]

    def _call(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return func(**kwargs)
        except ClientError as error:
            details = error.response.get("Error", {})
            raise ProviderError(
                operation=operation,
                reason=details.get("Message") or str(error),
                code=details.get("Code"),
            ) from error
        except BotoCoreError as error:
            raise ProviderError(operation=operation, reason=str(error)) from error


def _native_volume_reference(pv: client.V1PersistentVolume) -> str:
    if pv.spec.csi is not None:
        return pv.spec.csi.volume_handle or ""
    if pv.spec.aws_elastic_block_store is not None:
        return pv.spec.aws_elastic_block_store.volume_id or ""
    return ""


def _tag(key: str, value: str) -> dict[str, str]:
    return {"Key": key, "Value": value}


def _propagated_tags(tags: list[dict[str, str]] | None, reserved: frozenset[str]) -> list[dict[str, str]]:
    return [tag for tag in tags or [] if tag.get("Key") not in reserved]
