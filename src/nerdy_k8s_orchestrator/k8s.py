from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, TypeVar

from kubernetes import client, config, watch
from kubernetes.client import ApiException

from .models import Record, ResourceKind

R = TypeVar("R", bound=Record)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 20


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    batch_api: client.BatchV1Api
    storage_api: client.StorageV1Api
    custom_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class StoreError(RuntimeError):
    """Raised when a request against the Kubernetes API fails."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ObjectNotFoundError(StoreError):
    """Raised when the requested object does not exist."""


class ConflictError(StoreError):
    """Raised when a write loses an optimistic-concurrency race or the object already exists."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    return build_clients(client.ApiClient())


def build_clients(api_client: client.ApiClient) -> KubernetesClients:
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        batch_api=client.BatchV1Api(api_client),
        storage_api=client.StorageV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
    )


def translate_api_exception(*, operation: str, hint: str, error: ApiException) -> StoreError:
    message = format_api_exception_message(operation=operation, hint=hint, error=error)
    if error.status == 404:
        return ObjectNotFoundError(message, status=error.status)
    if error.status == 409:
        return ConflictError(message, status=error.status)
    return StoreError(message, status=error.status)


def format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes request failed while trying to {operation}: API status {status} ({reason}). {hint}"


class ObjectStore:
    """Typed access to custom resources through ``CustomObjectsApi``.

    Writes carry the record's resource version, so a stale update surfaces as
    ``ConflictError`` and the caller is expected to reload and retry.
    """

    def __init__(
        self,
        custom_api: client.CustomObjectsApi,
        *,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._api = custom_api
        self._timeout = request_timeout_seconds

    def get(self, record_type: type[R], name: str, namespace: str | None = None) -> R:
        kind = record_type.KIND
        body = self._call(
            f"get {kind.kind} '{_qualified(name, namespace)}'",
            f"Verify RBAC allows get on {kind.plural}.",
            self._api.get_namespaced_custom_object if kind.namespaced else self._api.get_cluster_custom_object,
            kind,
            namespace,
            name=name,
        )
        return record_type.from_dict(body)

    def list(self, record_type: type[R], namespace: str | None = None) -> list[R]:
        kind = record_type.KIND
        if kind.namespaced and namespace:
            body = self._call(
                f"list {kind.plural} in namespace '{namespace}'",
                f"Verify RBAC allows list on {kind.plural}.",
                self._api.list_namespaced_custom_object,
                kind,
                namespace,
            )
        else:
            body = self._call(
                f"list {kind.plural}",
                f"Verify RBAC allows cluster-wide list on {kind.plural}.",
                self._api.list_cluster_custom_object,
                kind,
                None,
            )
        return [record_type.from_dict(item) for item in body.get("items") or []]

    def create(self, record: R) -> R:
        kind = record.KIND
        payload = record.to_dict()
        payload["metadata"].pop("resourceVersion", None)
        body = self._call(
            f"create {kind.kind} '{record.display_name}'",
            f"Verify RBAC allows create on {kind.plural}.",
            self._api.create_namespaced_custom_object if kind.namespaced else self._api.create_cluster_custom_object,
            kind,
            record.metadata.namespace,
            body=payload,
        )
        return type(record).from_dict(body)

    def update(self, record: R) -> R:
        kind = record.KIND
        body = self._call(
            f"update {kind.kind} '{record.display_name}'",
            "Reload the object and retry if it was modified concurrently.",
            self._api.replace_namespaced_custom_object
            if kind.namespaced
            else self._api.replace_cluster_custom_object,
            kind,
            record.metadata.namespace,
            name=record.metadata.name,
            body=record.to_dict(),
        )
        return type(record).from_dict(body)

    def delete(self, record_type: type[Record], name: str, namespace: str | None = None) -> bool:
        """Delete an object. Returns False when it was already gone."""
        kind = record_type.KIND
        try:
            self._call(
                f"delete {kind.kind} '{_qualified(name, namespace)}'",
                f"Verify RBAC allows delete on {kind.plural}.",
                self._api.delete_namespaced_custom_object
                if kind.namespaced
                else self._api.delete_cluster_custom_object,
                kind,
                namespace,
                name=name,
            )
        except ObjectNotFoundError:
            return False
        return True

    def watch(
        self,
        record_type: type[Record],
        namespace: str | None = None,
        *,
        timeout_seconds: int,
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        kind = record_type.KIND
        stream = watch.Watch()
        kwargs: dict[str, Any] = {
            "group": kind.group,
            "version": kind.version,
            "plural": kind.plural,
            "timeout_seconds": timeout_seconds,
        }
        if kind.namespaced and namespace:
            func = self._api.list_namespaced_custom_object
            kwargs["namespace"] = namespace
        else:
            func = self._api.list_cluster_custom_object
        try:
            for event in stream.stream(func, **kwargs):
                yield event["type"], event["object"]
        except ApiException as error:
            raise translate_api_exception(
                operation=f"watch {kind.plural}",
                hint=f"Verify RBAC allows watch on {kind.plural}.",
                error=error,
            ) from error
        finally:
            stream.stop()

    def _call(
        self,
        operation: str,
        hint: str,
        func: Any,
        kind: ResourceKind,
        namespace: str | None,
        **kwargs: Any,
    ) -> Any:
        if kind.namespaced and namespace is not None:
            kwargs["namespace"] = namespace
        try:
            return func(
                group=kind.group,
                version=kind.version,
                plural=kind.plural,
                _request_timeout=self._timeout,
                **kwargs,
            )
        except ApiException as error:
            raise translate_api_exception(operation=operation, hint=hint, error=error) from error


def _qualified(name: str, namespace: str | None) -> str:
    return f"{namespace}/{name}" if namespace else name


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
