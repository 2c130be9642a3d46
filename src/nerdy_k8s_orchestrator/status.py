from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class VolumeOperationStatus(str, Enum):
    """Normalized lifecycle of a per-volume backup or restore."""

    INITIAL = ""
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in {VolumeOperationStatus.SUCCESSFUL, VolumeOperationStatus.FAILED}


class MigrationStatusType(str, Enum):
    INITIAL = ""
    PENDING = "Pending"
    CAPTURED = "Captured"
    IN_PROGRESS = "InProgress"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in {MigrationStatusType.SUCCESSFUL, MigrationStatusType.FAILED}


def parse_migration_status(value: str | None) -> MigrationStatusType:
    """Map a migration status string onto the lifecycle.

    A missing value is Initial; anything outside the known vocabulary is
    treated as Failed so an unexpected state can never block scheduling.
    """
    if not value:
        return MigrationStatusType.INITIAL
    try:
        return MigrationStatusType(value)
    except ValueError:
        return MigrationStatusType.FAILED


def parse_volume_status(value: str | None) -> VolumeOperationStatus:
    if not value:
        return VolumeOperationStatus.INITIAL
    try:
        return VolumeOperationStatus(value)
    except ValueError:
        return VolumeOperationStatus.FAILED


@dataclass(frozen=True)
class StatusMapping:
    """Total mapping from a provider's native status vocabulary.

    Every value in one of the three sets resolves to exactly one lifecycle
    state. Values outside the vocabulary resolve to Failed.
    """

    in_progress: frozenset[str]
    successful: frozenset[str]
    failed: frozenset[str]

    def __post_init__(self) -> None:
        overlap = (
            (self.in_progress & self.successful)
            | (self.in_progress & self.failed)
            | (self.successful & self.failed)
        )
        if overlap:
            raise ValueError(f"native statuses mapped to more than one state: {', '.join(sorted(overlap))}")

    @property
    def vocabulary(self) -> frozenset[str]:
        return self.in_progress | self.successful | self.failed

    def resolve(self, native_status: str | None) -> VolumeOperationStatus:
        if native_status in self.in_progress:
            return VolumeOperationStatus.IN_PROGRESS
        if native_status in self.successful:
            return VolumeOperationStatus.SUCCESSFUL
        return VolumeOperationStatus.FAILED
