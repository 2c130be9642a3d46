from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar, TypeVar
import copy

from .status import (
    MigrationStatusType,
    VolumeOperationStatus,
    parse_migration_status,
    parse_volume_status,
)

STORK_GROUP = "stork.libopenstorage.org"
STORK_VERSION = "v1alpha1"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

E = TypeVar("E", bound=Enum)


@dataclass(frozen=True)
class ResourceKind:
    kind: str
    plural: str
    namespaced: bool = True
    group: str = STORK_GROUP
    version: str = STORK_VERSION

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


class ClusterPairStatusType(str, Enum):
    INITIAL = ""
    NOT_PROVIDED = "NotProvided"
    READY = "Ready"
    ERROR = "Error"


class ClusterDomainUpdateStatusType(str, Enum):
    INITIAL = ""
    SUCCESSFUL = "Successful"
    FAILED = "Failed"


class ClusterDomainState(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class SchedulePolicyType(str, Enum):
    INTERVAL = "Interval"
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"


# Evaluation order for trigger decisions.
SCHEDULE_POLICY_TYPES: tuple[SchedulePolicyType, ...] = (
    SchedulePolicyType.INTERVAL,
    SchedulePolicyType.DAILY,
    SchedulePolicyType.WEEKLY,
    SchedulePolicyType.MONTHLY,
)


def utc_now() -> datetime:
    return datetime.now(tz=UTC).replace(microsecond=0)


def parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


def _parse_enum(enum_type: type[E], value: Any, default: E) -> E:
    if value is None:
        return default
    try:
        return enum_type(value)
    except ValueError:
        return default


def _merge(base: Any, owned: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base) if isinstance(base, dict) else {}
    for key, value in owned.items():
        if value is None or value == {} or value == []:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


@dataclass(frozen=True)
class OwnerReference:
    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OwnerReference:
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            uid=data.get("uid", ""),
            controller=bool(data.get("controller", False)),
            block_owner_deletion=bool(data.get("blockOwnerDeletion", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }


@dataclass
class ObjectMeta:
    name: str
    namespace: str | None = None
    uid: str = ""
    resource_version: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    finalizers: list[str] = field(default_factory=list)
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ObjectMeta:
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace"),
            uid=data.get("uid", ""),
            resource_version=data.get("resourceVersion"),
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
            owner_references=[OwnerReference.from_dict(ref) for ref in data.get("ownerReferences") or []],
            finalizers=list(data.get("finalizers") or []),
            creation_timestamp=parse_time(data.get("creationTimestamp")),
            deletion_timestamp=parse_time(data.get("deletionTimestamp")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "uid": self.uid or None,
            "resourceVersion": self.resource_version,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "ownerReferences": [ref.to_dict() for ref in self.owner_references],
            "finalizers": list(self.finalizers),
            "creationTimestamp": format_time(self.creation_timestamp),
            "deletionTimestamp": format_time(self.deletion_timestamp),
        }


class Record:
    """Base for custom resources exchanged with the object store.

    ``raw`` keeps the body the record was read from so fields this package
    does not model survive a read-modify-write cycle.
    """

    KIND: ClassVar[ResourceKind]
    metadata: ObjectMeta
    raw: dict[str, Any]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Record:
        raise NotImplementedError

    def _spec(self) -> dict[str, Any] | None:
        return None

    def _status(self) -> dict[str, Any] | None:
        return None

    def to_dict(self) -> dict[str, Any]:
        body = copy.deepcopy(self.raw)
        body["apiVersion"] = self.KIND.api_version
        body["kind"] = self.KIND.kind
        body["metadata"] = _merge(body.get("metadata"), self.metadata.to_dict())
        spec = self._spec()
        if spec is not None:
            body["spec"] = _merge(body.get("spec"), spec)
        status = self._status()
        if status is not None:
            body["status"] = _merge(body.get("status"), status)
        return body

    @property
    def being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def display_name(self) -> str:
        if self.metadata.namespace:
            return f"{self.metadata.namespace}/{self.metadata.name}"
        return self.metadata.name

    def owner_reference(self) -> OwnerReference:
        return OwnerReference(
            api_version=self.KIND.api_version,
            kind=self.KIND.kind,
            name=self.metadata.name,
            uid=self.metadata.uid,
        )


@dataclass
class ClusterPair(Record):
    KIND: ClassVar[ResourceKind] = ResourceKind(kind="ClusterPair", plural="clusterpairs")

    metadata: ObjectMeta
    config: Any = None
    options: dict[str, str] = field(default_factory=dict)
    storage_status: ClusterPairStatusType = ClusterPairStatusType.INITIAL
    scheduler_status: ClusterPairStatusType = ClusterPairStatusType.INITIAL
    remote_storage_id: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClusterPair:
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            config=spec.get("config"),
            options=dict(spec.get("options") or {}),
            storage_status=_parse_enum(ClusterPairStatusType, status.get("storageStatus"), ClusterPairStatusType.INITIAL),
            scheduler_status=_parse_enum(
                ClusterPairStatusType, status.get("schedulerStatus"), ClusterPairStatusType.INITIAL
            ),
            remote_storage_id=status.get("remoteStorageId") or "",
            raw=copy.deepcopy(data),
        )

    def _status(self) -> dict[str, Any]:
        return {
            "storageStatus": self.storage_status.value,
            "schedulerStatus": self.scheduler_status.value,
            "remoteStorageId": self.remote_storage_id or None,
        }


@dataclass
class ClusterDomainUpdate(Record):
    KIND: ClassVar[ResourceKind] = ResourceKind(
        kind="ClusterDomainUpdate",
        plural="clusterdomainupdates",
        namespaced=False,
    )

    metadata: ObjectMeta
    cluster_domain: str = ""
    active: bool = False
    status: ClusterDomainUpdateStatusType = ClusterDomainUpdateStatusType.INITIAL
    reason: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClusterDomainUpdate:
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            cluster_domain=spec.get("clusterDomain", ""),
            active=bool(spec.get("active", False)),
            status=_parse_enum(ClusterDomainUpdateStatusType, status.get("status"), ClusterDomainUpdateStatusType.INITIAL),
            reason=status.get("reason") or "",
            raw=copy.deepcopy(data),
        )

    def _status(self) -> dict[str, Any]:
        return {"status": self.status.value, "reason": self.reason or None}


@dataclass
class ClusterDomainsStatus(Record):
    KIND: ClassVar[ResourceKind] = ResourceKind(
        kind="ClusterDomainsStatus",
        plural="clusterdomainsstatuses",
        namespaced=False,
    )

    metadata: ObjectMeta
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClusterDomainsStatus:
        return cls(metadata=ObjectMeta.from_dict(data.get("metadata") or {}), raw=copy.deepcopy(data))


@dataclass(frozen=True)
class ClusterDomainInfo:
    name: str
    state: ClusterDomainState
    sync_status: str = ""


@dataclass(frozen=True)
class ClusterDomains:
    local_domain: str
    domain_infos: tuple[ClusterDomainInfo, ...] = ()

    def local_domain_inactive(self) -> bool:
        return any(
            info.name == self.local_domain and info.state == ClusterDomainState.INACTIVE
            for info in self.domain_infos
        )


@dataclass
class SchedulePolicy(Record):
    KIND: ClassVar[ResourceKind] = ResourceKind(kind="SchedulePolicy", plural="schedulepolicies", namespaced=False)

    metadata: ObjectMeta
    policy: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchedulePolicy:
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            policy=dict(data.get("policy") or {}),
            raw=copy.deepcopy(data),
        )

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["policy"] = copy.deepcopy(self.policy)
        return body


@dataclass
class ScheduledMigrationStatus:
    name: str
    creation_timestamp: datetime
    status: MigrationStatusType = MigrationStatusType.PENDING
    finish_timestamp: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduledMigrationStatus:
        return cls(
            name=data.get("name", ""),
            creation_timestamp=parse_time(data.get("creationTimestamp")) or datetime.min.replace(tzinfo=UTC),
            status=parse_migration_status(data.get("status")),
            finish_timestamp=parse_time(data.get("finishTimestamp")),
        )

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "name": self.name,
            "creationTimestamp": format_time(self.creation_timestamp),
            "status": self.status.value,
        }
        if self.finish_timestamp is not None:
            body["finishTimestamp"] = format_time(self.finish_timestamp)
        return body


@dataclass
class MigrationSchedule(Record):
    KIND: ClassVar[ResourceKind] = ResourceKind(kind="MigrationSchedule", plural="migrationschedules")

    metadata: ObjectMeta
    template: dict[str, Any] = field(default_factory=dict)
    schedule_policy_name: str = ""
    suspend: bool | None = None
    items: dict[SchedulePolicyType, list[ScheduledMigrationStatus]] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationSchedule:
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        items: dict[SchedulePolicyType, list[ScheduledMigrationStatus]] = {}
        for policy_type, entries in (status.get("items") or {}).items():
            try:
                key = SchedulePolicyType(policy_type)
            except ValueError:
                continue
            items[key] = [ScheduledMigrationStatus.from_dict(entry) for entry in entries or []]
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            template=copy.deepcopy(spec.get("template") or {}),
            schedule_policy_name=spec.get("schedulePolicyName", ""),
            suspend=spec.get("suspend"),
            items=items,
            raw=copy.deepcopy(data),
        )

    @property
    def suspended(self) -> bool:
        return bool(self.suspend)

    def _spec(self) -> dict[str, Any]:
        return {
            "template": copy.deepcopy(self.template),
            "schedulePolicyName": self.schedule_policy_name,
            "suspend": self.suspend,
        }

    def _status(self) -> dict[str, Any]:
        return {
            "items": {
                policy_type.value: [entry.to_dict() for entry in entries]
                for policy_type, entries in self.items.items()
            }
        }


@dataclass
class Migration(Record):
    KIND: ClassVar[ResourceKind] = ResourceKind(kind="Migration", plural="migrations")

    metadata: ObjectMeta
    spec: dict[str, Any] = field(default_factory=dict)
    status: MigrationStatusType = MigrationStatusType.INITIAL
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Migration:
        status = data.get("status") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            spec=copy.deepcopy(data.get("spec") or {}),
            status=parse_migration_status(status.get("status")),
            raw=copy.deepcopy(data),
        )

    def _spec(self) -> dict[str, Any]:
        return copy.deepcopy(self.spec)


@dataclass(frozen=True)
class ApplicationBackupVolumeInfo:
    persistent_volume_claim: str
    namespace: str
    driver_name: str
    volume: str = ""
    backup_id: str = ""
    zones: tuple[str, ...] = ()
    status: VolumeOperationStatus = VolumeOperationStatus.INITIAL
    reason: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApplicationBackupVolumeInfo:
        return cls(
            persistent_volume_claim=data.get("persistentVolumeClaim", ""),
            namespace=data.get("namespace", ""),
            driver_name=data.get("driverName", ""),
            volume=data.get("volume", ""),
            backup_id=data.get("backupID", ""),
            zones=tuple(data.get("zones") or ()),
            status=parse_volume_status(data.get("status")),
            reason=data.get("reason", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "persistentVolumeClaim": self.persistent_volume_claim,
            "namespace": self.namespace,
            "driverName": self.driver_name,
            "volume": self.volume,
            "backupID": self.backup_id,
            "zones": list(self.zones),
            "status": self.status.value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ApplicationRestoreVolumeInfo:
    persistent_volume_claim: str
    source_namespace: str
    driver_name: str
    source_volume: str = ""
    restore_volume: str = ""
    zones: tuple[str, ...] = ()
    status: VolumeOperationStatus = VolumeOperationStatus.INITIAL
    reason: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApplicationRestoreVolumeInfo:
        return cls(
            persistent_volume_claim=data.get("persistentVolumeClaim", ""),
            source_namespace=data.get("sourceNamespace", ""),
            driver_name=data.get("driverName", ""),
            source_volume=data.get("sourceVolume", ""),
            restore_volume=data.get("restoreVolume", ""),
            zones=tuple(data.get("zones") or ()),
            status=parse_volume_status(data.get("status")),
            reason=data.get("reason", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "persistentVolumeClaim": self.persistent_volume_claim,
            "sourceNamespace": self.source_namespace,
            "driverName": self.driver_name,
            "sourceVolume": self.source_volume,
            "restoreVolume": self.restore_volume,
            "zones": list(self.zones),
            "status": self.status.value,
            "reason": self.reason,
        }


@dataclass
class ApplicationBackup(Record):
    KIND: ClassVar[ResourceKind] = ResourceKind(kind="ApplicationBackup", plural="applicationbackups")

    metadata: ObjectMeta
    volumes: list[ApplicationBackupVolumeInfo] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApplicationBackup:
        status = data.get("status") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            volumes=[ApplicationBackupVolumeInfo.from_dict(item) for item in status.get("volumes") or []],
            raw=copy.deepcopy(data),
        )

    def _status(self) -> dict[str, Any]:
        return {"volumes": [volume.to_dict() for volume in self.volumes]}


@dataclass
class ApplicationRestore(Record):
    KIND: ClassVar[ResourceKind] = ResourceKind(kind="ApplicationRestore", plural="applicationrestores")

    metadata: ObjectMeta
    volumes: list[ApplicationRestoreVolumeInfo] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApplicationRestore:
        status = data.get("status") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            volumes=[ApplicationRestoreVolumeInfo.from_dict(item) for item in status.get("volumes") or []],
            raw=copy.deepcopy(data),
        )

    def _status(self) -> dict[str, Any]:
        return {"volumes": [volume.to_dict() for volume in self.volumes]}


@dataclass
class VolumeImport(Record):
    KIND: ClassVar[ResourceKind] = ResourceKind(kind="VolumeImport", plural="volumeimports")

    metadata: ObjectMeta
    source_name: str = ""
    source_namespace: str = ""
    destination_name: str = ""
    destination_namespace: str = ""
    destination_spec: dict[str, Any] | None = None
    rsync_job_name: str = ""
    condition_type: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VolumeImport:
        metadata = ObjectMeta.from_dict(data.get("metadata") or {})
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        source = spec.get("source") or {}
        pvc = (spec.get("destination") or {}).get("pvc") or {}
        destination_metadata = pvc.get("metadata") or {}
        return cls(
            metadata=metadata,
            source_name=source.get("name", ""),
            source_namespace=source.get("namespace") or metadata.namespace or "",
            destination_name=destination_metadata.get("name", ""),
            destination_namespace=destination_metadata.get("namespace") or metadata.namespace or "",
            destination_spec=copy.deepcopy(pvc.get("spec")),
            rsync_job_name=status.get("rsyncJobName", ""),
            condition_type=status.get("conditionType", ""),
            raw=copy.deepcopy(data),
        )

    def _status(self) -> dict[str, Any]:
        return {
            "rsyncJobName": self.rsync_job_name or None,
            "conditionType": self.condition_type or None,
        }
