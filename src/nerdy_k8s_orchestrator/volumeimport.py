from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import logging
import re
from typing import Any, Callable, TypeVar

from kubernetes import client
from kubernetes.client import ApiException

from .controller import Request, Result
from .events import EventRecorder
from .k8s import ObjectNotFoundError, ObjectStore
from .log import object_logger
from .models import VolumeImport

logger = logging.getLogger(__name__)

LABEL_CONTROLLER = "stork.libopenstorage.org/controller"
LABEL_CONTROLLER_NAME = "controller-name"
CONTROLLER_VALUE = "volume-import"
JOB_SELECTOR = f"{LABEL_CONTROLLER}={CONTROLLER_VALUE}"
CONDITION_TYPE_COMPLETED = "Completed"
DEFAULT_RSYNC_IMAGE = "eeacms/rsync"
RSYNC_COMMAND = ["/bin/sh", "-c", "rsync -avz /src/ /dst"]
CLAIM_CREATED_REQUEUE_SECONDS = 5.0

T = TypeVar("T")


class VolumeImportError(RuntimeError):
    """Raised when a volume import cannot proceed."""


class ClaimNotFoundError(VolumeImportError):
    """Raised when a claim taking part in an import does not exist."""


class SerializedExecutor:
    """Runs submitted calls one at a time on a single worker thread."""

    def __init__(self) -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="volume-import")

    def run(self, func: Callable[..., T], *args: Any) -> T:
        return self._executor.submit(func, *args).result()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


def job_name(volume_import_name: str) -> str:
    return _sanitize_dns_label(f"job-{volume_import_name}", max_length=63)


def job_labels(volume_import_name: str) -> dict[str, str]:
    return {LABEL_CONTROLLER: CONTROLLER_VALUE, LABEL_CONTROLLER_NAME: volume_import_name}


def build_rsync_job(volume_import: VolumeImport, *, image: str = DEFAULT_RSYNC_IMAGE) -> client.V1Job:
    owner = volume_import.owner_reference()
    labels = job_labels(volume_import.metadata.name)
    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name(volume_import.metadata.name),
            namespace=volume_import.metadata.namespace,
            labels=labels,
            owner_references=[
                client.V1OwnerReference(
                    api_version=owner.api_version,
                    kind=owner.kind,
                    name=owner.name,
                    uid=owner.uid,
                    controller=True,
                    block_owner_deletion=True,
                )
            ],
        ),
        spec=client.V1JobSpec(
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=dict(labels)),
                spec=client.V1PodSpec(
                    restart_policy="OnFailure",
                    containers=[
                        client.V1Container(
                            name="rsync",
                            image=image,
                            command=list(RSYNC_COMMAND),
                            volume_mounts=[
                                client.V1VolumeMount(name="src-vol", mount_path="/src"),
                                client.V1VolumeMount(name="dst-vol", mount_path="/dst"),
                            ],
                        )
                    ],
                    volumes=[
                        client.V1Volume(
                            name="src-vol",
                            persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                                claim_name=volume_import.source_name,
                            ),
                        ),
                        client.V1Volume(
                            name="dst-vol",
                            persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                                claim_name=volume_import.destination_name,
                            ),
                        ),
                    ],
                ),
            ),
        ),
    )


def is_job_completed(job: client.V1Job) -> bool:
    conditions = (job.status.conditions if job.status else None) or []
    return any(condition.type == "Complete" and condition.status == "True" for condition in conditions)


class VolumeImportReconciler:
    """Copies one claim into another with an rsync Job.

    Reconciles of imports and of their Jobs share one serialized executor, so
    at most one of them runs at any time.
    """

    def __init__(
        self,
        *,
        store: ObjectStore,
        core_api: client.CoreV1Api,
        batch_api: client.BatchV1Api,
        events: EventRecorder,
        rsync_image: str = DEFAULT_RSYNC_IMAGE,
        executor: SerializedExecutor | None = None,
    ) -> None:
        self.store = store
        self.core_api = core_api
        self.batch_api = batch_api
        self.events = events
        self.rsync_image = rsync_image
        self.executor = executor or SerializedExecutor()

    def reconcile(self, request: Request) -> Result | None:
        return self.executor.run(self._reconcile_import, request)

    def reconcile_job(self, request: Request) -> Result | None:
        return self.executor.run(self._reconcile_job, request)

    def _reconcile_job(self, request: Request) -> Result | None:
        try:
            job = self.batch_api.read_namespaced_job(name=request.name, namespace=request.namespace)
        except ApiException as error:
            if error.status == 404:
                return None
            raise

        labels = (job.metadata.labels if job.metadata else None) or {}
        if labels.get(LABEL_CONTROLLER) != CONTROLLER_VALUE:
            return None

        owner = _controller_reference(job.metadata.owner_references or [])
        if owner is None:
            raise VolumeImportError(f"job {request} has no controllerRef")

        try:
            self.store.get(VolumeImport, owner.name, request.namespace)
        except ObjectNotFoundError:
            logger.info("Deleting job %s whose volume import %s no longer exists", request, owner.name)
            self._delete_job(request.name, request.namespace)
            return None
        return self._reconcile_import(Request(name=owner.name, namespace=request.namespace))

    def _reconcile_import(self, request: Request) -> Result | None:
        try:
            volume_import = self.store.get(VolumeImport, request.name, request.namespace)
        except ObjectNotFoundError:
            return None
        namespace = volume_import.metadata.namespace

        if volume_import.being_deleted:
            self._delete_job(volume_import.rsync_job_name or job_name(volume_import.metadata.name), namespace)
            return None

        log = object_logger(logger, volume_import)
        log.debug("Handling volume import")
        try:
            result = self._check_claims(volume_import)
        except VolumeImportError as error:
            self.events.warning(volume_import, "Failed", str(error))
            raise
        if result is not None:
            return result

        job = self._read_job(job_name(volume_import.metadata.name), namespace)
        if job is None:
            job = self._create_job(volume_import)
            log.info("Created rsync job %s", job.metadata.name)

        self._update_status(volume_import, job)
        return None

    def _check_claims(self, volume_import: VolumeImport) -> Result | None:
        name = volume_import.metadata.name
        source = f"{volume_import.source_namespace}/{volume_import.source_name}"
        try:
            self._ensure_unmounted_claim(volume_import.source_name, volume_import.source_namespace, name)
        except VolumeImportError as error:
            raise VolumeImportError(f"source pvc: {source}: {error}") from error

        destination = f"{volume_import.destination_namespace}/{volume_import.destination_name}"
        try:
            self._ensure_unmounted_claim(volume_import.destination_name, volume_import.destination_namespace, name)
        except ClaimNotFoundError as error:
            if not volume_import.destination_spec:
                raise VolumeImportError(f"destination pvc: {destination}: {error}") from error
            self._create_claim(volume_import)
            object_logger(logger, volume_import).info("Created destination claim %s", destination)
            return Result(requeue_after=CLAIM_CREATED_REQUEUE_SECONDS)
        except VolumeImportError as error:
            raise VolumeImportError(f"destination pvc: {destination}: {error}") from error
        return None

    def _ensure_unmounted_claim(self, name: str, namespace: str, volume_import_name: str) -> None:
        try:
            claim = self.core_api.read_namespaced_persistent_volume_claim(name=name, namespace=namespace)
        except ApiException as error:
            if error.status == 404:
                raise ClaimNotFoundError("not found") from error
            raise VolumeImportError(_api_error_reason(error)) from error

        phase = claim.status.phase if claim.status else None
        if phase != "Bound":
            raise VolumeImportError(f"status: expected Bound, got {phase}")

        try:
            pods = self.core_api.list_namespaced_pod(namespace=namespace).items
        except ApiException as error:
            raise VolumeImportError(f"get mounted pods: {_api_error_reason(error)}") from error

        mounted = [
            pod.metadata.name
            for pod in pods
            if _mounts_claim(pod, name)
            and ((pod.metadata.labels or {}).get(LABEL_CONTROLLER_NAME) != volume_import_name)
        ]
        if mounted:
            raise VolumeImportError(f"mounted to [{', '.join(mounted)}] pods")

    def _create_claim(self, volume_import: VolumeImport) -> None:
        body = {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {
                "name": volume_import.destination_name,
                "namespace": volume_import.destination_namespace,
            },
            "spec": volume_import.destination_spec,
        }
        try:
            self.core_api.create_namespaced_persistent_volume_claim(
                namespace=volume_import.destination_namespace,
                body=body,
            )
        except ApiException as error:
            if error.status != 409:
                raise

    def _read_job(self, name: str, namespace: str) -> client.V1Job | None:
        try:
            return self.batch_api.read_namespaced_job(name=name, namespace=namespace)
        except ApiException as error:
            if error.status == 404:
                return None
            raise

    def _create_job(self, volume_import: VolumeImport) -> client.V1Job:
        job = build_rsync_job(volume_import, image=self.rsync_image)
        try:
            return self.batch_api.create_namespaced_job(namespace=volume_import.metadata.namespace, body=job)
        except ApiException as error:
            if error.status != 409:
                raise
        existing = self._read_job(job.metadata.name, volume_import.metadata.namespace)
        return existing if existing is not None else job

    def _delete_job(self, name: str, namespace: str) -> None:
        try:
            self.batch_api.delete_namespaced_job(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(propagation_policy="Background"),
            )
        except ApiException as error:
            if error.status == 404:
                return
            raise

    def _update_status(self, volume_import: VolumeImport, job: client.V1Job) -> None:
        before = (volume_import.rsync_job_name, volume_import.condition_type)
        volume_import.rsync_job_name = job.metadata.name
        if is_job_completed(job):
            volume_import.condition_type = CONDITION_TYPE_COMPLETED
        if (volume_import.rsync_job_name, volume_import.condition_type) != before:
            self.store.update(volume_import)


def _mounts_claim(pod: client.V1Pod, claim_name: str) -> bool:
    volumes = (pod.spec.volumes if pod.spec else None) or []
    return any(
        volume.persistent_volume_claim is not None and volume.persistent_volume_claim.claim_name == claim_name
        for volume in volumes
    )


def _controller_reference(owner_refs: list[client.V1OwnerReference]) -> client.V1OwnerReference | None:
    for owner_ref in owner_refs:
        if owner_ref.controller and owner_ref.kind == VolumeImport.KIND.kind:
            return owner_ref
    return None


def _api_error_reason(error: ApiException) -> str:
    return f"API status {error.status} ({error.reason or 'no reason provided'})"


def _sanitize_dns_label(value: str, max_length: int) -> str:
    lowered = value.lower()
    normalized = re.sub(r"[^a-z0-9-]", "-", lowered).strip("-")
    normalized = re.sub(r"-+", "-", normalized)
    if len(normalized) > max_length:
        normalized = normalized[:max_length].rstrip("-")
    return normalized or "job"
