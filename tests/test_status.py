from __future__ import annotations

import pytest

from nerdy_k8s_orchestrator.aws import SNAPSHOT_STATUS as AWS_SNAPSHOT_STATUS
from nerdy_k8s_orchestrator.aws import VOLUME_STATUS as AWS_VOLUME_STATUS
from nerdy_k8s_orchestrator.gcp import DISK_STATUS as GCP_DISK_STATUS
from nerdy_k8s_orchestrator.gcp import SNAPSHOT_STATUS as GCP_SNAPSHOT_STATUS
from nerdy_k8s_orchestrator.status import (
    MigrationStatusType,
    StatusMapping,
    VolumeOperationStatus,
    parse_migration_status,
    parse_volume_status,
)

ALL_MAPPINGS = [AWS_SNAPSHOT_STATUS, AWS_VOLUME_STATUS, GCP_SNAPSHOT_STATUS, GCP_DISK_STATUS]


@pytest.mark.parametrize("mapping", ALL_MAPPINGS)
def test_status_mapping_resolves_every_native_status_to_a_lifecycle_state(mapping: StatusMapping) -> None:
    resolved = {native: mapping.resolve(native) for native in mapping.vocabulary}

    assert set(resolved.values()) <= {
        VolumeOperationStatus.IN_PROGRESS,
        VolumeOperationStatus.SUCCESSFUL,
        VolumeOperationStatus.FAILED,
    }
    assert all(resolved[native] == VolumeOperationStatus.IN_PROGRESS for native in mapping.in_progress)
    assert all(resolved[native] == VolumeOperationStatus.SUCCESSFUL for native in mapping.successful)


@pytest.mark.parametrize("mapping", ALL_MAPPINGS)
def test_status_mapping_with_unknown_native_status_resolves_failed(mapping: StatusMapping) -> None:
    assert mapping.resolve("something-new") == VolumeOperationStatus.FAILED
    assert mapping.resolve(None) == VolumeOperationStatus.FAILED


def test_status_mapping_with_overlapping_sets_raises_value_error() -> None:
    with pytest.raises(ValueError, match="ready"):
        StatusMapping(
            in_progress=frozenset({"ready"}),
            successful=frozenset({"ready"}),
            failed=frozenset(),
        )


def test_volume_operation_status_terminal_states_are_successful_and_failed() -> None:
    terminal = {status for status in VolumeOperationStatus if status.is_terminal}

    assert terminal == {VolumeOperationStatus.SUCCESSFUL, VolumeOperationStatus.FAILED}


def test_parse_migration_status_with_empty_value_returns_initial() -> None:
    assert parse_migration_status(None) == MigrationStatusType.INITIAL
    assert parse_migration_status("") == MigrationStatusType.INITIAL


def test_parse_migration_status_with_unknown_value_returns_failed() -> None:
    assert parse_migration_status("Exploded") == MigrationStatusType.FAILED
    assert parse_migration_status("Captured") == MigrationStatusType.CAPTURED


def test_parse_volume_status_with_known_and_unknown_values() -> None:
    assert parse_volume_status("InProgress") == VolumeOperationStatus.IN_PROGRESS
    assert parse_volume_status("") == VolumeOperationStatus.INITIAL
    assert parse_volume_status("Weird") == VolumeOperationStatus.FAILED
