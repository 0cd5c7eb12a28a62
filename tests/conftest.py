from __future__ import annotations

import copy
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from cephfs_pvc_converter.config import RunContext
from cephfs_pvc_converter.errors import ClusterApiError
from cephfs_pvc_converter.models import WorkloadKind, WorkloadRef
from cephfs_pvc_converter.waiting import PollPolicy

NAMESPACE = "app1"
STORAGE_CLASS = "ceph-cephfs-sc"


def _merge(target: dict[str, Any], patch: dict[str, Any]) -> None:
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class FakeCluster:
    """In-memory stand-in for ``ClusterClient`` with a minimal PV controller."""

    def __init__(self) -> None:
        self.namespaces: set[str] = set()
        self.workloads: dict[WorkloadRef, int] = {}
        self.pods: dict[tuple[str, str], dict[str, Any]] = {}
        self.claims: dict[tuple[str, str], dict[str, Any]] = {}
        self.volumes: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.ignore_retain_patch = False
        self.bind_on_create = True
        self.fail_scale_for: set[str] = set()

    # Workloads

    def namespace_exists(self, namespace: str) -> bool:
        self.calls.append(("namespace_exists", namespace))
        return namespace in self.namespaces

    def list_workloads(self, namespace: str) -> list[tuple[WorkloadRef, int]]:
        self.calls.append(("list_workloads", namespace))
        return [(ref, count) for ref, count in sorted(self.workloads.items()) if ref.namespace == namespace]

    def scale_workload(self, ref: WorkloadRef, replicas: int) -> None:
        self.calls.append(("scale_workload", ref.name, replicas))
        if ref.name in self.fail_scale_for:
            raise ClusterApiError(f"scale {ref} failed", status=500)
        if ref not in self.workloads:
            raise ClusterApiError(f"{ref} not found", status=404)
        self.workloads[ref] = replicas
        if replicas == 0:
            for key, pod in list(self.pods.items()):
                if pod.get("owner") == ref.name and pod["phase"] == "Running":
                    del self.pods[key]

    # Pods

    def delete_succeeded_pods(self, namespace: str) -> int:
        self.calls.append(("delete_succeeded_pods", namespace))
        doomed = [key for key, pod in self.pods.items() if key[0] == namespace and pod["phase"] == "Succeeded"]
        for key in doomed:
            del self.pods[key]
        return len(doomed)

    def list_active_pods(self, namespace: str) -> list[str]:
        self.calls.append(("list_active_pods", namespace))
        return sorted(
            name
            for (pod_namespace, name), pod in self.pods.items()
            if pod_namespace == namespace and (pod["phase"] == "Running" or pod.get("terminating"))
        )

    # Claims

    def list_claims(self, namespace: str) -> list[dict[str, Any]]:
        self.calls.append(("list_claims", namespace))
        return [copy.deepcopy(claim) for (claim_ns, _), claim in sorted(self.claims.items()) if claim_ns == namespace]

    def read_claim(self, namespace: str, name: str) -> dict[str, Any]:
        self.calls.append(("read_claim", namespace, name))
        if (namespace, name) not in self.claims:
            raise ClusterApiError(f"PVC {namespace}/{name} not found", status=404)
        return copy.deepcopy(self.claims[(namespace, name)])

    def read_claim_phase(self, namespace: str, name: str) -> str | None:
        return self.read_claim(namespace, name).get("status", {}).get("phase")

    def claim_exists(self, namespace: str, name: str) -> bool:
        return (namespace, name) in self.claims

    def delete_claim(self, namespace: str, name: str) -> None:
        self.calls.append(("delete_claim", namespace, name))
        claim = self.claims.pop((namespace, name))
        volume = self.volumes.get(claim["spec"].get("volumeName", ""))
        if volume is not None:
            if volume["spec"].get("persistentVolumeReclaimPolicy") == "Delete":
                del self.volumes[volume["metadata"]["name"]]
            else:
                volume["status"] = {"phase": "Released"}

    def create_claim(self, namespace: str, manifest: dict[str, Any]) -> None:
        name = manifest["metadata"]["name"]
        self.calls.append(("create_claim", namespace, name))
        if (namespace, name) in self.claims:
            raise ClusterApiError(f"PVC {namespace}/{name} already exists", status=409)
        claim = copy.deepcopy(manifest)
        claim["metadata"]["namespace"] = namespace
        claim["metadata"].setdefault("annotations", {})[
            "kubectl.kubernetes.io/last-applied-configuration"
        ] = "{}"
        claim["status"] = {"phase": "Pending"}
        self.claims[(namespace, name)] = claim
        if self.bind_on_create:
            self._bind(namespace, name)

    def remove_claim_annotation(self, namespace: str, name: str, annotation: str) -> None:
        self.calls.append(("remove_claim_annotation", namespace, name, annotation))
        self.claims[(namespace, name)]["metadata"].get("annotations", {}).pop(annotation, None)

    # Volumes

    def read_volume(self, name: str) -> dict[str, Any]:
        self.calls.append(("read_volume", name))
        if name not in self.volumes:
            raise ClusterApiError(f"PV {name} not found", status=404)
        return copy.deepcopy(self.volumes[name])

    def read_volume_phase(self, name: str) -> str | None:
        return self.read_volume(name).get("status", {}).get("phase")

    def volume_exists(self, name: str) -> bool:
        return name in self.volumes

    def patch_volume(self, name: str, body: dict[str, Any]) -> None:
        self.calls.append(("patch_volume", name, copy.deepcopy(body)))
        if self.ignore_retain_patch and body.get("spec", {}).get("persistentVolumeReclaimPolicy") == "Retain":
            return
        volume = self.volumes[name]
        _merge(volume, body)
        if "claimRef" in body.get("spec", {}) and body["spec"]["claimRef"] is None:
            volume["status"] = {"phase": "Available"}

    def replace_volume(self, manifest: dict[str, Any]) -> None:
        name = manifest["metadata"]["name"]
        self.calls.append(("replace_volume", name))
        if name not in self.volumes:
            raise ClusterApiError(f"PV {name} not found", status=404)
        status = self.volumes[name].get("status", {"phase": "Available"})
        self.volumes[name] = copy.deepcopy(manifest)
        self.volumes[name]["status"] = status

    def create_volume(self, manifest: dict[str, Any]) -> None:
        name = manifest["metadata"]["name"]
        self.calls.append(("create_volume", name))
        if name in self.volumes:
            raise ClusterApiError(f"PV {name} already exists", status=409)
        self.volumes[name] = copy.deepcopy(manifest)
        self.volumes[name]["status"] = {"phase": "Available"}

    def delete_volume(self, name: str) -> None:
        self.calls.append(("delete_volume", name))
        del self.volumes[name]

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def _bind(self, namespace: str, name: str) -> None:
        claim = self.claims[(namespace, name)]
        volume = self.volumes.get(claim["spec"].get("volumeName", ""))
        if volume is None or volume["spec"].get("claimRef"):
            return
        volume["spec"]["claimRef"] = {"kind": "PersistentVolumeClaim", "name": name, "namespace": namespace}
        volume["status"] = {"phase": "Bound"}
        claim["status"] = {"phase": "Bound"}


def make_claim(
    name: str,
    *,
    volume_name: str,
    namespace: str = NAMESPACE,
    storage_class: str = STORAGE_CLASS,
    access_mode: str = "ReadWriteOnce",
) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": f"uid-{name}",
            "resourceVersion": "1001",
            "creationTimestamp": "2026-01-01T00:00:00Z",
            "annotations": {
                "pv.kubernetes.io/bind-completed": "yes",
                "pv.kubernetes.io/bound-by-controller": "yes",
                "volume.kubernetes.io/storage-provisioner": "cephfs.csi.ceph.com",
            },
            "finalizers": ["kubernetes.io/pvc-protection"],
        },
        "spec": {
            "accessModes": [access_mode],
            "resources": {"requests": {"storage": "1Gi"}},
            "storageClassName": storage_class,
            "volumeMode": "Filesystem",
            "volumeName": volume_name,
        },
        "status": {"phase": "Bound", "accessModes": [access_mode], "capacity": {"storage": "1Gi"}},
    }


def make_volume(
    name: str,
    *,
    claim_name: str,
    namespace: str = NAMESPACE,
    access_mode: str = "ReadWriteOnce",
    mounter: str = "kernel",
    reclaim_policy: str = "Delete",
) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolume",
        "metadata": {
            "name": name,
            "uid": f"uid-{name}",
            "resourceVersion": "2002",
            "creationTimestamp": "2026-01-01T00:00:00Z",
            "annotations": {"pv.kubernetes.io/provisioned-by": "cephfs.csi.ceph.com"},
            "finalizers": ["kubernetes.io/pv-protection"],
        },
        "spec": {
            "accessModes": [access_mode],
            "capacity": {"storage": "1Gi"},
            "claimRef": {
                "kind": "PersistentVolumeClaim",
                "name": claim_name,
                "namespace": namespace,
                "uid": f"uid-{claim_name}",
            },
            "csi": {
                "driver": "cephfs.csi.ceph.com",
                "volumeHandle": f"0001-0009-rook-ceph-{name}",
                "volumeAttributes": {
                    "clusterID": "rook-ceph",
                    "fsName": "myfs",
                    "mounter": mounter,
                    "subvolumePath": f"/volumes/csi/{name}",
                },
            },
            "persistentVolumeReclaimPolicy": reclaim_policy,
            "storageClassName": STORAGE_CLASS,
            "volumeMode": "Filesystem",
        },
        "status": {"phase": "Bound"},
    }


@pytest.fixture
def fake_cluster() -> FakeCluster:
    cluster = FakeCluster()
    cluster.namespaces.add(NAMESPACE)
    cluster.claims[(NAMESPACE, "data-pvc")] = make_claim("data-pvc", volume_name="pv-data")
    cluster.volumes["pv-data"] = make_volume("pv-data", claim_name="data-pvc")
    cluster.claims[(NAMESPACE, "scratch")] = make_claim("scratch", volume_name="pv-scratch", storage_class="standard")

    web = WorkloadRef(kind=WorkloadKind.DEPLOYMENT, name="web", namespace=NAMESPACE)
    db = WorkloadRef(kind=WorkloadKind.STATEFUL_SET, name="db", namespace=NAMESPACE)
    idle = WorkloadRef(kind=WorkloadKind.DEPLOYMENT, name="idle", namespace=NAMESPACE)
    cluster.workloads.update({web: 3, db: 2, idle: 0})
    cluster.pods[(NAMESPACE, "web-1")] = {"phase": "Running", "owner": "web"}
    cluster.pods[(NAMESPACE, "db-0")] = {"phase": "Running", "owner": "db"}
    cluster.pods[(NAMESPACE, "migrate-job-x")] = {"phase": "Succeeded", "owner": "migrate"}
    return cluster


@pytest.fixture
def run_context(tmp_path: Path) -> RunContext:
    fast = PollPolicy(interval_seconds=0.001, timeout_seconds=0.5)
    return RunContext(
        cluster_name="test-cluster",
        namespace=NAMESPACE,
        timestamp=datetime(2026, 3, 1, 12, 30).strftime("%Y%m%d_%H%M%S"),
        execution_dir=tmp_path / "test-cluster" / NAMESPACE,
        storage_class=STORAGE_CLASS,
        drain_policy=fast,
        bind_policy=fast,
        delete_policy=fast,
    )
