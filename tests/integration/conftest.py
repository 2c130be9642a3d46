from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator
import os
import shlex
import shutil
import subprocess
import time
import uuid

import pytest
import yaml

_ENV_RUN_FLAG = "NKO_RUN_KIND_INTEGRATION"
_REQUIRED_BINARIES = ("docker", "kind", "kubectl")
_STORK_GROUP = "stork.libopenstorage.org"


def _flag_enabled(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _render_command(command: list[str]) -> str:
    return " ".join(shlex.quote(token) for token in command)


def _run_command(
    command: list[str],
    *,
    timeout_seconds: int,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    completed = subprocess.run(
        command,
        check=False,
        capture_output=True,
        text=True,
        timeout=timeout_seconds,
    )

    if check and completed.returncode != 0:
        stdout = completed.stdout.strip() or "<empty>"
        stderr = completed.stderr.strip() or "<empty>"
        raise RuntimeError(
            f"Command failed with exit code {completed.returncode}: {_render_command(command)}\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}"
        )

    return completed


def _verify_prerequisites() -> None:
    if not _flag_enabled(os.getenv(_ENV_RUN_FLAG)):
        pytest.skip(
            "KinD integration tests are disabled by default. "
            f"Set {_ENV_RUN_FLAG}=1 to run them.",
            allow_module_level=True,
        )

    missing = [binary for binary in _REQUIRED_BINARIES if shutil.which(binary) is None]
    if missing:
        missing_rendered = ", ".join(sorted(missing))
        pytest.skip(
            f"KinD integration prerequisites are missing: {missing_rendered}.",
            allow_module_level=True,
        )

    docker_info = _run_command(
        ["docker", "info", "--format", "{{.ServerVersion}}"],
        timeout_seconds=30,
        check=False,
    )
    if docker_info.returncode != 0:
        stderr = docker_info.stderr.strip() or docker_info.stdout.strip() or "unknown docker error"
        pytest.skip(
            f"Docker daemon is not reachable for KinD integration tests: {stderr}.",
            allow_module_level=True,
        )


def _volume_import_crd() -> dict[str, Any]:
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": f"volumeimports.{_STORK_GROUP}"},
        "spec": {
            "group": _STORK_GROUP,
            "scope": "Namespaced",
            "names": {"plural": "volumeimports", "singular": "volumeimport", "kind": "VolumeImport"},
            "versions": [
                {
                    "name": "v1alpha1",
                    "served": True,
                    "storage": True,
                    "schema": {"openAPIV3Schema": {"type": "object", "x-kubernetes-preserve-unknown-fields": True}},
                }
            ],
        },
    }


def _seed_documents(namespace: str, claim_names: tuple[str, ...], seed_pod_name: str) -> list[dict[str, Any]]:
    claims = [
        {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {"name": name, "namespace": namespace},
            "spec": {"accessModes": ["ReadWriteOnce"], "resources": {"requests": {"storage": "64Mi"}}},
        }
        for name in claim_names
    ]
    # local-path binds on first consumer; the seed pod binds both claims and writes the payload.
    seed_pod = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": seed_pod_name, "namespace": namespace},
        "spec": {
            "restartPolicy": "Never",
            "containers": [
                {
                    "name": "seed",
                    "image": "alpine:3.20",
                    "command": ["/bin/sh", "-c", "echo 'nko integration payload' > /src/hello.txt && sleep 3600"],
                    "volumeMounts": [
                        {"name": f"vol-{index}", "mountPath": "/src" if index == 0 else f"/mnt/{index}"}
                        for index in range(len(claim_names))
                    ],
                }
            ],
            "volumes": [
                {"name": f"vol-{index}", "persistentVolumeClaim": {"claimName": name}}
                for index, name in enumerate(claim_names)
            ],
        },
    }
    return [{"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace}}, *claims, seed_pod]


@dataclass(frozen=True)
class KindClusterContext:
    cluster_name: str
    kubeconfig_path: Path
    harness_dir: Path
    namespace: str
    source_claim: str
    destination_claim: str

    def run_kubectl(
        self,
        *args: str,
        timeout_seconds: int = 120,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        return _run_command(
            ["kubectl", "--kubeconfig", str(self.kubeconfig_path), *args],
            timeout_seconds=timeout_seconds,
            check=check,
        )

    def apply_documents(self, file_name: str, documents: list[dict[str, Any]]) -> None:
        manifest_path = self.harness_dir / file_name
        manifest_path.write_text(yaml.safe_dump_all(documents, sort_keys=False), encoding="utf-8")
        self.run_kubectl("apply", "-f", str(manifest_path), timeout_seconds=180)

    def collect_diagnostics(self) -> str:
        diagnostic_commands: tuple[tuple[str, list[str]], ...] = (
            ("nodes", ["get", "nodes", "-o", "wide"]),
            ("pods", ["-n", self.namespace, "get", "pods", "-o", "wide"]),
            ("pvc/pv", ["-n", self.namespace, "get", "pvc,pv"]),
            ("jobs", ["-n", self.namespace, "get", "jobs", "-o", "wide"]),
            ("volumeimports", ["-n", self.namespace, "get", "volumeimports", "-o", "yaml"]),
            ("events", ["-n", self.namespace, "get", "events", "--sort-by=.lastTimestamp"]),
        )

        sections: list[str] = []
        for title, args in diagnostic_commands:
            completed = self.run_kubectl(*args, timeout_seconds=60, check=False)
            output = completed.stdout.strip() or completed.stderr.strip() or "<no output>"
            sections.append(f"[{title}]\n{output}")

        return "\n\n".join(sections)


def _wait_for_claims_bound(cluster: KindClusterContext, *, timeout_seconds: int) -> None:
    deadline = time.monotonic() + timeout_seconds
    pending = {cluster.source_claim, cluster.destination_claim}
    while time.monotonic() < deadline:
        for claim in sorted(pending):
            completed = cluster.run_kubectl(
                "-n",
                cluster.namespace,
                "get",
                "pvc",
                claim,
                "-o",
                "jsonpath={.status.phase}",
                timeout_seconds=30,
                check=False,
            )
            if completed.returncode == 0 and completed.stdout.strip() == "Bound":
                pending.discard(claim)
        if not pending:
            return
        time.sleep(2)

    raise RuntimeError(f"PVCs {sorted(pending)} in {cluster.namespace} did not become Bound in time.")


@pytest.fixture(scope="session")
def kind_cluster(tmp_path_factory: pytest.TempPathFactory) -> Iterator[KindClusterContext]:
    _verify_prerequisites()

    harness_dir = tmp_path_factory.mktemp("kind-harness")
    kubeconfig_path = harness_dir / "kubeconfig"
    cluster_name = f"nko-it-{uuid.uuid4().hex[:8]}"
    seed_pod_name = "nko-seed"

    _run_command(
        [
            "kind",
            "create",
            "cluster",
            "--name",
            cluster_name,
            "--wait",
            "180s",
            "--kubeconfig",
            str(kubeconfig_path),
        ],
        timeout_seconds=420,
    )

    cluster = KindClusterContext(
        cluster_name=cluster_name,
        kubeconfig_path=kubeconfig_path,
        harness_dir=harness_dir,
        namespace="nko-integration",
        source_claim="nko-source-data",
        destination_claim="nko-destination-data",
    )

    try:
        cluster.apply_documents("crds.yaml", [_volume_import_crd()])
        cluster.run_kubectl(
            "wait",
            "--for=condition=Established",
            f"crd/volumeimports.{_STORK_GROUP}",
            "--timeout=60s",
            timeout_seconds=90,
        )
        cluster.apply_documents(
            "seed.yaml",
            _seed_documents(cluster.namespace, (cluster.source_claim, cluster.destination_claim), seed_pod_name),
        )
        _wait_for_claims_bound(cluster, timeout_seconds=180)
        cluster.run_kubectl(
            "-n",
            cluster.namespace,
            "wait",
            "--for=condition=Ready",
            f"pod/{seed_pod_name}",
            "--timeout=180s",
            timeout_seconds=240,
        )
        cluster.run_kubectl(
            "-n",
            cluster.namespace,
            "delete",
            "pod",
            seed_pod_name,
            "--wait=true",
            timeout_seconds=120,
        )
        yield cluster
    finally:
        _run_command(
            ["kind", "delete", "cluster", "--name", cluster_name],
            timeout_seconds=240,
            check=False,
        )
