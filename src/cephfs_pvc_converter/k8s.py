from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .errors import ClusterApiError, MigrationError
from .models import WorkloadKind, WorkloadRef

DEFAULT_CONTEXT_NAME = "default"
IN_CLUSTER_CONTEXT_NAME = "in-cluster"
SUCCEEDED_POD_SELECTOR = "status.phase==Succeeded"
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api


class KubernetesAuthenticationError(MigrationError):
    """Raised when Kubernetes authentication configuration fails."""


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

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
    )


def current_context_name(kubeconfig_path: str | None = None) -> str:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        _, active_context = config.list_kube_config_contexts(config_file=expanded)
    except Exception:  # pylint: disable=broad-except
        return DEFAULT_CONTEXT_NAME
    if not active_context or not active_context.get("name"):
        return DEFAULT_CONTEXT_NAME
    return str(active_context["name"])


class ClusterClient:
    """Cluster operations used by a migration run.

    Manifests go in and out as plain dictionaries in the API's camelCase
    shape. Every failure surfaces as ``ClusterApiError``.
    """

    def __init__(self, clients: KubernetesClients) -> None:
        self.clients = clients

    def namespace_exists(self, namespace: str) -> bool:
        return self._exists(
            operation=f"read namespace '{namespace}'",
            hint="Confirm cluster connectivity and RBAC verbs for namespaces.",
            func=lambda: self.clients.core_api.read_namespace(name=namespace),
        )

    # Workloads

    def list_workloads(self, namespace: str) -> list[tuple[WorkloadRef, int]]:
        deployments = _safe_kubernetes_call(
            operation=f"list Deployments in namespace '{namespace}'",
            hint="Check RBAC verbs for deployments.",
            func=lambda: self.clients.apps_api.list_namespaced_deployment(namespace=namespace).items,
        )
        stateful_sets = _safe_kubernetes_call(
            operation=f"list StatefulSets in namespace '{namespace}'",
            hint="Check RBAC verbs for statefulsets.",
            func=lambda: self.clients.apps_api.list_namespaced_stateful_set(namespace=namespace).items,
        )

        workloads: list[tuple[WorkloadRef, int]] = []
        for kind, items in ((WorkloadKind.DEPLOYMENT, deployments), (WorkloadKind.STATEFUL_SET, stateful_sets)):
            for item in items:
                ref = WorkloadRef(kind=kind, name=item.metadata.name, namespace=namespace)
                workloads.append((ref, _desired_replicas(item)))
        return workloads

    def scale_workload(self, ref: WorkloadRef, replicas: int) -> None:
        body = {"spec": {"replicas": replicas}}
        if ref.kind is WorkloadKind.DEPLOYMENT:
            func: Callable[[], Any] = lambda: self.clients.apps_api.patch_namespaced_deployment_scale(
                name=ref.name, namespace=ref.namespace, body=body
            )
        else:
            func = lambda: self.clients.apps_api.patch_namespaced_stateful_set_scale(
                name=ref.name, namespace=ref.namespace, body=body
            )
        _safe_kubernetes_call(
            operation=f"scale {ref.kind.value} '{ref.namespace}/{ref.name}' to {replicas}",
            hint="Check RBAC verbs for the scale subresource.",
            func=func,
        )

    # Pods

    def delete_succeeded_pods(self, namespace: str) -> int:
        pods = _safe_kubernetes_call(
            operation=f"list Succeeded Pods in namespace '{namespace}'",
            hint="Check RBAC verbs for pods.",
            func=lambda: self.clients.core_api.list_namespaced_pod(
                namespace=namespace,
                field_selector=SUCCEEDED_POD_SELECTOR,
            ).items,
        )
        for pod in pods:
            name = pod.metadata.name
            try:
                self.clients.core_api.delete_namespaced_pod(name=name, namespace=namespace)
            except ApiException as error:
                if error.status == 404:
                    continue
                raise ClusterApiError(
                    _format_api_exception_message(
                        operation=f"delete Pod '{namespace}/{name}'",
                        hint="Check RBAC verbs for pods.",
                        error=error,
                    ),
                    status=error.status,
                ) from error
        return len(pods)

    def list_active_pods(self, namespace: str) -> list[str]:
        """Return pods that are Running or terminating."""
        pods = _safe_kubernetes_call(
            operation=f"list Pods in namespace '{namespace}'",
            hint="Check RBAC verbs for pods.",
            func=lambda: self.clients.core_api.list_namespaced_pod(namespace=namespace).items,
        )
        active: list[str] = []
        for pod in pods:
            phase = pod.status.phase if pod.status else None
            terminating = bool(pod.metadata and pod.metadata.deletion_timestamp)
            if phase == "Running" or terminating:
                active.append(pod.metadata.name)
        return sorted(active)

    # PersistentVolumeClaims

    def list_claims(self, namespace: str) -> list[dict[str, Any]]:
        items = _safe_kubernetes_call(
            operation=f"list PVCs in namespace '{namespace}'",
            hint="Check RBAC verbs for persistentvolumeclaims.",
            func=lambda: self.clients.core_api.list_namespaced_persistent_volume_claim(namespace=namespace).items,
        )
        return [self._to_manifest(item) for item in items]

    def read_claim(self, namespace: str, name: str) -> dict[str, Any]:
        item = _safe_kubernetes_call(
            operation=f"read PVC '{namespace}/{name}'",
            hint="Confirm the claim exists.",
            func=lambda: self.clients.core_api.read_namespaced_persistent_volume_claim(name=name, namespace=namespace),
        )
        return self._to_manifest(item)

    def read_claim_phase(self, namespace: str, name: str) -> str | None:
        return _phase(self.read_claim(namespace, name))

    def claim_exists(self, namespace: str, name: str) -> bool:
        return self._exists(
            operation=f"read PVC '{namespace}/{name}'",
            hint="Check RBAC verbs for persistentvolumeclaims.",
            func=lambda: self.clients.core_api.read_namespaced_persistent_volume_claim(name=name, namespace=namespace),
        )

    def delete_claim(self, namespace: str, name: str) -> None:
        _safe_kubernetes_call(
            operation=f"delete PVC '{namespace}/{name}'",
            hint="Check RBAC verbs for persistentvolumeclaims.",
            func=lambda: self.clients.core_api.delete_namespaced_persistent_volume_claim(name=name, namespace=namespace),
        )

    def create_claim(self, namespace: str, manifest: dict[str, Any]) -> None:
        name = manifest.get("metadata", {}).get("name", "")
        _safe_kubernetes_call(
            operation=f"create PVC '{namespace}/{name}'",
            hint="Check RBAC verbs for persistentvolumeclaims and that the old claim is gone.",
            func=lambda: self.clients.core_api.create_namespaced_persistent_volume_claim(
                namespace=namespace, body=manifest
            ),
        )

    def remove_claim_annotation(self, namespace: str, name: str, annotation: str) -> None:
        body = {"metadata": {"annotations": {annotation: None}}}
        _safe_kubernetes_call(
            operation=f"remove annotation '{annotation}' from PVC '{namespace}/{name}'",
            hint="Check RBAC verbs for persistentvolumeclaims.",
            func=lambda: self.clients.core_api.patch_namespaced_persistent_volume_claim(
                name=name, namespace=namespace, body=body
            ),
        )

    # PersistentVolumes

    def read_volume(self, name: str) -> dict[str, Any]:
        item = _safe_kubernetes_call(
            operation=f"read PV '{name}'",
            hint="Confirm the volume exists and RBAC allows get on persistentvolumes.",
            func=lambda: self.clients.core_api.read_persistent_volume(name=name),
        )
        return self._to_manifest(item)

    def read_volume_phase(self, name: str) -> str | None:
        return _phase(self.read_volume(name))

    def volume_exists(self, name: str) -> bool:
        return self._exists(
            operation=f"read PV '{name}'",
            hint="Check RBAC verbs for persistentvolumes.",
            func=lambda: self.clients.core_api.read_persistent_volume(name=name),
        )

    def patch_volume(self, name: str, body: dict[str, Any]) -> None:
        _safe_kubernetes_call(
            operation=f"patch PV '{name}'",
            hint="Check RBAC verbs for persistentvolumes.",
            func=lambda: self.clients.core_api.patch_persistent_volume(name=name, body=body),
        )

    def replace_volume(self, manifest: dict[str, Any]) -> None:
        name = manifest["metadata"]["name"]
        _safe_kubernetes_call(
            operation=f"replace PV '{name}'",
            hint="Immutable fields may require recreating the volume object.",
            func=lambda: self.clients.core_api.replace_persistent_volume(name=name, body=manifest),
        )

    def create_volume(self, manifest: dict[str, Any]) -> None:
        name = manifest["metadata"]["name"]
        _safe_kubernetes_call(
            operation=f"create PV '{name}'",
            hint="Check RBAC verbs for persistentvolumes and that the old object is gone.",
            func=lambda: self.clients.core_api.create_persistent_volume(body=manifest),
        )

    def delete_volume(self, name: str) -> None:
        _safe_kubernetes_call(
            operation=f"delete PV '{name}'",
            hint="Check RBAC verbs for persistentvolumes.",
            func=lambda: self.clients.core_api.delete_persistent_volume(name=name),
        )

    def _to_manifest(self, item: Any) -> dict[str, Any]:
        return self.clients.api_client.sanitize_for_serialization(item)

    def _exists(self, *, operation: str, hint: str, func: Callable[[], Any]) -> bool:
        try:
            func()
        except ApiException as error:
            if error.status == 404:
                return False
            raise ClusterApiError(
                _format_api_exception_message(operation=operation, hint=hint, error=error),
                status=error.status,
            ) from error
        except Exception as error:
            raise ClusterApiError(f"Kubernetes API call failed while trying to {operation}: {error}. {hint}") from error
        return True


def _desired_replicas(workload: Any) -> int:
    spec_replicas = workload.spec.replicas if workload.spec else None
    if spec_replicas is not None:
        return int(spec_replicas)
    status_replicas = workload.status.replicas if workload.status else None
    return int(status_replicas or 0)


def _phase(manifest: dict[str, Any]) -> str | None:
    return (manifest.get("status") or {}).get("phase")


def _safe_kubernetes_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise ClusterApiError(
            _format_api_exception_message(
                operation=operation,
                hint=hint,
                error=error,
            ),
            status=error.status,
        ) from error
    except Exception as error:
        raise ClusterApiError(f"Kubernetes API call failed while trying to {operation}: {error}. {hint}") from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes API call failed while trying to {operation}: API status {status} ({reason}). {hint}"


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
