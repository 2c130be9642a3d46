from __future__ import annotations

from unittest.mock import Mock

import pytest

from nerdy_k8s_orchestrator.clusterpair import (
    CLEANUP_FINALIZER,
    ClusterPairReconciler,
    RemoteClusterError,
    kubeconfig_dict,
)
from nerdy_k8s_orchestrator.controller import Request
from nerdy_k8s_orchestrator.driver import ProviderError, UnsupportedCapabilityError
from nerdy_k8s_orchestrator.models import ClusterPair, ClusterPairStatusType

REQUEST = Request(name="remote", namespace="apps")
REMOTE_CONFIG = {
    "clusters": [{"name": "remote", "cluster": {"server": "https://remote.example:6443"}}],
    "contexts": [{"name": "remote", "context": {"cluster": "remote", "user": "admin"}}],
    "users": [{"name": "admin", "user": {"token": "secret"}}],
    "current-context": "remote",
}


def _pair_body(options: dict | None = None, status: dict | None = None, **metadata) -> dict:
    body = {
        "metadata": {"name": "remote", "namespace": "apps", "uid": "pair-uid", **metadata},
        "spec": {"config": REMOTE_CONFIG, "options": options or {}},
    }
    if status:
        body["status"] = status
    return body


def _reconciler(store, events, driver: Mock | None = None, probe: Mock | None = None) -> ClusterPairReconciler:
    return ClusterPairReconciler(
        store=store,
        driver=driver or Mock(),
        events=events,
        probe=probe or Mock(return_value="v1.29.2"),
    )


def test_kubeconfig_dict_with_mapping_sections_converts_to_lists() -> None:
    raw = (
        "clusters:\n"
        "  remote:\n"
        "    server: https://remote.example:6443\n"
        "contexts:\n"
        "  remote:\n"
        "    cluster: remote\n"
        "    user: admin\n"
        "users:\n"
        "  admin:\n"
        "    token: secret\n"
        "currentContext: remote\n"
    )

    config = kubeconfig_dict(raw)

    assert config["clusters"] == [{"name": "remote", "cluster": {"server": "https://remote.example:6443"}}]
    assert config["users"] == [{"name": "admin", "user": {"token": "secret"}}]
    assert config["current-context"] == "remote"


def test_kubeconfig_dict_with_list_sections_keeps_them() -> None:
    assert kubeconfig_dict(REMOTE_CONFIG)["contexts"] == REMOTE_CONFIG["contexts"]


def test_kubeconfig_dict_with_empty_config_raises_remote_cluster_error() -> None:
    with pytest.raises(RemoteClusterError, match="empty"):
        kubeconfig_dict(None)


def test_reconcile_without_storage_options_marks_not_provided(store, events) -> None:
    store.add(ClusterPair.from_dict(_pair_body()))
    driver = Mock()

    _reconciler(store, events, driver=driver).reconcile(REQUEST)

    pair = store.get(ClusterPair, "remote", "apps")
    assert pair.storage_status == ClusterPairStatusType.NOT_PROVIDED
    assert pair.scheduler_status == ClusterPairStatusType.READY
    assert CLEANUP_FINALIZER in pair.metadata.finalizers
    driver.require.assert_not_called()
    reasons = [call.args[1] for call in events.normal.call_args_list]
    assert reasons == ["NotProvided", "Ready"]


def test_reconcile_with_stable_pair_records_no_new_events(store, events) -> None:
    store.add(ClusterPair.from_dict(_pair_body()))
    reconciler = _reconciler(store, events)
    reconciler.reconcile(REQUEST)
    update_count = len(store.updates)
    events.reset_mock()

    reconciler.reconcile(REQUEST)

    events.normal.assert_not_called()
    events.warning.assert_not_called()
    assert len(store.updates) == update_count


def test_reconcile_with_storage_options_pairs_storage(store, events) -> None:
    store.add(ClusterPair.from_dict(_pair_body(options={"ip": "10.0.0.5", "token": "abc"})))
    driver = Mock()
    driver.require.return_value.create_pair.return_value = "remote-cluster-id"

    _reconciler(store, events, driver=driver).reconcile(REQUEST)

    pair = store.get(ClusterPair, "remote", "apps")
    assert pair.storage_status == ClusterPairStatusType.READY
    assert pair.remote_storage_id == "remote-cluster-id"
    assert store.body(ClusterPair, "remote", "apps")["status"]["remoteStorageId"] == "remote-cluster-id"
    assert events.normal.call_args_list[0].args[2] == "Storage successfully paired"


def test_reconcile_with_driver_failure_marks_storage_error(store, events) -> None:
    store.add(ClusterPair.from_dict(_pair_body(options={"ip": "10.0.0.5"})))
    driver = Mock()
    driver.require.return_value.create_pair.side_effect = ProviderError(operation="pair clusters", reason="denied")

    _reconciler(store, events, driver=driver).reconcile(REQUEST)

    pair = store.get(ClusterPair, "remote", "apps")
    assert pair.storage_status == ClusterPairStatusType.ERROR
    assert pair.scheduler_status == ClusterPairStatusType.READY
    assert events.warning.call_args.args[1] == "Error"
    assert "denied" in events.warning.call_args.args[2]


def test_reconcile_with_unsupported_driver_marks_storage_error(store, events) -> None:
    store.add(ClusterPair.from_dict(_pair_body(options={"ip": "10.0.0.5"})))
    driver = Mock()
    driver.require.side_effect = UnsupportedCapabilityError(driver="aws", capability="cluster pairing")

    _reconciler(store, events, driver=driver).reconcile(REQUEST)

    pair = store.get(ClusterPair, "remote", "apps")
    assert pair.storage_status == ClusterPairStatusType.ERROR
    assert "does not support cluster pairing" in events.warning.call_args.args[2]


def test_reconcile_with_unsupported_driver_does_not_retry_pairing(store, events) -> None:
    store.add(ClusterPair.from_dict(_pair_body(options={"ip": "10.0.0.5"})))
    driver = Mock()
    driver.require.side_effect = UnsupportedCapabilityError(driver="aws", capability="cluster pairing")
    reconciler = _reconciler(store, events, driver=driver)

    for _ in range(3):
        reconciler.reconcile(REQUEST)

    driver.require.assert_called_once()
    events.warning.assert_called_once()
    assert store.get(ClusterPair, "remote", "apps").storage_status == ClusterPairStatusType.ERROR


def test_reconcile_with_persisted_error_and_driver_without_pairing_skips_create(store, events) -> None:
    store.add(
        ClusterPair.from_dict(
            _pair_body(options={"ip": "10.0.0.5"}, status={"storageStatus": "Error", "schedulerStatus": "Ready"})
        )
    )
    driver = Mock()
    driver.supports.return_value = False

    _reconciler(store, events, driver=driver).reconcile(REQUEST)

    driver.require.assert_not_called()
    events.warning.assert_not_called()


def test_reconcile_with_transient_failure_retries_pairing(store, events) -> None:
    store.add(ClusterPair.from_dict(_pair_body(options={"ip": "10.0.0.5"})))
    driver = Mock()
    driver.require.return_value.create_pair.side_effect = [
        ProviderError(operation="pair clusters", reason="timeout"),
        "remote-cluster-id",
    ]
    reconciler = _reconciler(store, events, driver=driver)

    reconciler.reconcile(REQUEST)
    reconciler.reconcile(REQUEST)

    pair = store.get(ClusterPair, "remote", "apps")
    assert pair.storage_status == ClusterPairStatusType.READY
    assert pair.remote_storage_id == "remote-cluster-id"


def test_reconcile_with_unreachable_remote_marks_scheduler_error(store, events) -> None:
    store.add(ClusterPair.from_dict(_pair_body()))
    probe = Mock(side_effect=RemoteClusterError("Unable to reach remote cluster: timed out"))

    _reconciler(store, events, probe=probe).reconcile(REQUEST)

    pair = store.get(ClusterPair, "remote", "apps")
    assert pair.scheduler_status == ClusterPairStatusType.ERROR
    probe.assert_called_once_with(REMOTE_CONFIG)
    assert events.warning.call_args.args[1:] == ("Error", "Unable to reach remote cluster: timed out")


def test_reconcile_with_ready_scheduler_skips_probe(store, events) -> None:
    store.add(ClusterPair.from_dict(_pair_body(status={"storageStatus": "NotProvided", "schedulerStatus": "Ready"})))
    probe = Mock()

    _reconciler(store, events, probe=probe).reconcile(REQUEST)

    probe.assert_not_called()


def test_reconcile_with_deleted_pair_removes_storage_pairing_and_finalizer(store, events) -> None:
    store.add(
        ClusterPair.from_dict(
            _pair_body(
                options={"ip": "10.0.0.5"},
                status={"storageStatus": "Ready", "schedulerStatus": "Ready", "remoteStorageId": "remote-cluster-id"},
                finalizers=[CLEANUP_FINALIZER],
                deletionTimestamp="2024-05-14T22:00:00Z",
            )
        )
    )
    driver = Mock()

    _reconciler(store, events, driver=driver).reconcile(REQUEST)

    deleted_pair = driver.require.return_value.delete_pair.call_args.args[0]
    assert deleted_pair.remote_storage_id == "remote-cluster-id"
    assert "finalizers" not in store.body(ClusterPair, "remote", "apps")["metadata"]


def test_reconcile_with_deleted_pair_and_delete_failure_keeps_finalizer(store, events) -> None:
    store.add(
        ClusterPair.from_dict(
            _pair_body(
                status={"storageStatus": "Ready", "remoteStorageId": "remote-cluster-id"},
                finalizers=[CLEANUP_FINALIZER],
                deletionTimestamp="2024-05-14T22:00:00Z",
            )
        )
    )
    driver = Mock()
    driver.require.return_value.delete_pair.side_effect = ProviderError(operation="unpair", reason="timeout")

    with pytest.raises(ProviderError):
        _reconciler(store, events, driver=driver).reconcile(REQUEST)

    assert store.body(ClusterPair, "remote", "apps")["metadata"]["finalizers"] == [CLEANUP_FINALIZER]
