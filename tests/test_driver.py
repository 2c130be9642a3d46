from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from nerdy_k8s_orchestrator.aws import AwsDriver
from nerdy_k8s_orchestrator.driver import (
    BackupCapability,
    ClusterDomainCapability,
    ClusterPairCapability,
    DriverError,
    DriverRegistry,
    MigrationCapability,
    RestoreCapability,
    UnsupportedCapabilityError,
)
from nerdy_k8s_orchestrator.gcp import GcpDriver


def _claim(
    *,
    annotations: dict[str, str] | None = None,
    storage_class: str | None = "fast",
    volume_name: str | None = "pv-data",
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name="data", namespace="apps", annotations=annotations or {}),
        spec=SimpleNamespace(storage_class_name=storage_class, volume_name=volume_name),
    )


def _pv(*, annotations: dict[str, str] | None = None, ebs: object | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name="pv-data", annotations=annotations or {}, labels={}),
        spec=SimpleNamespace(aws_elastic_block_store=ebs, gce_persistent_disk=None, csi=None),
    )


def _aws_driver(*, provisioner: str | None = None, storage_error: int | None = None, pv: object | None = None):
    core_api = Mock()
    storage_api = Mock()
    if storage_error is not None:
        storage_api.read_storage_class.side_effect = ApiException(status=storage_error, reason="Not Found")
    else:
        storage_api.read_storage_class.return_value = SimpleNamespace(provisioner=provisioner)
    core_api.read_persistent_volume.return_value = pv
    return AwsDriver(core_api=core_api, storage_api=storage_api, ec2_client=Mock()), core_api, storage_api


def test_owns_volume_claim_with_matching_storage_class_provisioner_returns_true() -> None:
    driver, core_api, _ = _aws_driver(provisioner="kubernetes.io/aws-ebs")

    assert driver.owns_volume_claim(_claim()) is True
    core_api.read_persistent_volume.assert_not_called()


def test_owns_volume_claim_with_csi_provisioner_returns_true() -> None:
    driver, _, _ = _aws_driver(provisioner="ebs.csi.aws.com")

    assert driver.owns_volume_claim(_claim()) is True


def test_owns_volume_claim_with_unrelated_provisioner_returns_false() -> None:
    driver, core_api, _ = _aws_driver(provisioner="kubernetes.io/gce-pd")

    assert driver.owns_volume_claim(_claim()) is False
    core_api.read_persistent_volume.assert_not_called()


def test_owns_volume_claim_with_claim_annotation_skips_storage_class_lookup() -> None:
    driver, _, storage_api = _aws_driver(provisioner="kubernetes.io/gce-pd")
    claim = _claim(annotations={"volume.beta.kubernetes.io/storage-provisioner": "kubernetes.io/aws-ebs"})

    assert driver.owns_volume_claim(claim) is True
    storage_api.read_storage_class.assert_not_called()


def test_owns_volume_claim_with_deleted_storage_class_falls_back_to_native_volume() -> None:
    driver, core_api, _ = _aws_driver(storage_error=404, pv=_pv(ebs=SimpleNamespace(volume_id="aws://us-east-1a/vol-1")))

    assert driver.owns_volume_claim(_claim()) is True
    core_api.read_persistent_volume.assert_called_once_with(name="pv-data")


def test_owns_volume_claim_with_deleted_storage_class_uses_provisioned_by_annotation() -> None:
    pv = _pv(annotations={"pv.kubernetes.io/provisioned-by": "pd.csi.storage.gke.io"})
    driver, _, _ = _aws_driver(storage_error=404, pv=pv)

    assert driver.owns_volume_claim(_claim()) is False


def test_owns_volume_claim_without_any_signal_returns_false() -> None:
    driver, _, _ = _aws_driver(storage_error=404, pv=_pv())

    assert driver.owns_volume_claim(_claim()) is False


def test_owns_volume_claim_without_bound_volume_returns_false() -> None:
    driver, core_api, _ = _aws_driver(storage_error=404)

    assert driver.owns_volume_claim(_claim(storage_class=None, volume_name=None)) is False
    core_api.read_persistent_volume.assert_not_called()


def test_owns_volume_claim_with_unreadable_volume_returns_false() -> None:
    driver, core_api, _ = _aws_driver(storage_error=404)
    core_api.read_persistent_volume.side_effect = ApiException(status=403, reason="Forbidden")

    assert driver.owns_volume_claim(_claim()) is False


def test_driver_capabilities_reflect_implemented_interfaces() -> None:
    driver, _, _ = _aws_driver(provisioner="kubernetes.io/aws-ebs")

    assert driver.capabilities == frozenset({BackupCapability, RestoreCapability, MigrationCapability})
    assert driver.supports(BackupCapability) is True
    assert driver.supports(ClusterPairCapability) is False


def test_driver_require_with_missing_capability_raises_unsupported() -> None:
    driver, _, _ = _aws_driver(provisioner="kubernetes.io/aws-ebs")

    with pytest.raises(UnsupportedCapabilityError, match="does not support cluster domains") as excinfo:
        driver.require(ClusterDomainCapability)

    assert excinfo.value.driver == "aws"
    assert isinstance(excinfo.value, DriverError)


def test_driver_require_with_implemented_capability_returns_driver() -> None:
    driver, _, _ = _aws_driver(provisioner="kubernetes.io/aws-ebs")

    assert driver.require(BackupCapability) is driver


def test_driver_registry_with_duplicate_name_raises_value_error() -> None:
    driver, _, _ = _aws_driver(provisioner="kubernetes.io/aws-ebs")
    registry = DriverRegistry([driver])

    with pytest.raises(ValueError, match="already registered"):
        registry.register(driver)


def test_driver_registry_get_with_unknown_name_raises_driver_error() -> None:
    with pytest.raises(DriverError, match="'portworx' is not registered"):
        DriverRegistry().get("portworx")


def test_driver_registry_driver_for_claim_returns_owning_driver() -> None:
    storage_api = Mock()
    storage_api.read_storage_class.return_value = SimpleNamespace(provisioner="pd.csi.storage.gke.io")
    aws = AwsDriver(core_api=Mock(), storage_api=storage_api, ec2_client=Mock())
    gcp = GcpDriver(core_api=Mock(), storage_api=storage_api, compute=Mock(), project="proj")
    registry = DriverRegistry([aws, gcp])

    assert registry.driver_for_claim(_claim()) is gcp
    assert registry.names() == ["aws", "gce"]
