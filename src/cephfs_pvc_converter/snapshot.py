from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from .errors import ArtifactError
from .models import ReplicaSnapshot, WorkloadKind, WorkloadRef

SNAPSHOT_FORMAT_VERSION = 1


def write_snapshot(path: Path, snapshot: ReplicaSnapshot) -> Path:
    """Write ``snapshot`` to a new file; an existing file is never replaced."""
    document = {
        "version": SNAPSHOT_FORMAT_VERSION,
        "namespace": snapshot.namespace,
        "captured_at": snapshot.captured_at,
        "workloads": [
            {"kind": ref.kind.value, "name": ref.name, "replicas": count}
            for ref, count in snapshot
        ],
    }
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise ArtifactError(path=path.parent, reason=error.strerror or str(error)) from error
    try:
        with path.open("x", encoding="utf-8") as handle:
            yaml.safe_dump(document, handle, default_flow_style=False, sort_keys=False)
    except FileExistsError as error:
        raise ArtifactError(
            path=path,
            reason="snapshot already exists; refusing to overwrite recorded replica counts",
        ) from error
    except OSError as error:
        raise ArtifactError(path=path, reason=error.strerror or str(error)) from error
    return path


def load_snapshot(path: Path, *, namespace: str) -> ReplicaSnapshot:
    """Load a snapshot file written by ``write_snapshot``.

    Plain text files with one ``<dp|sf>:<name>:<replicas>`` line per workload
    are accepted too, so older backups can still be replayed. Such lines are
    not always valid YAML (``dp:idle:`` parses as a mapping), so only a mapping
    with a ``workloads`` key is treated as a structured snapshot.
    """
    text = path.read_text(encoding="utf-8")
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError:
        loaded = None
    if isinstance(loaded, dict) and "workloads" in loaded:
        return _from_document(loaded, namespace=namespace, source=path)
    return _from_legacy_lines(text, namespace=namespace, source=path)


def _from_document(document: dict[str, Any], *, namespace: str, source: Path) -> ReplicaSnapshot:
    version = document.get("version", SNAPSHOT_FORMAT_VERSION)
    if version != SNAPSHOT_FORMAT_VERSION:
        raise ValueError(f"unsupported snapshot version {version!r} in {source}")
    recorded_namespace = document.get("namespace")
    if recorded_namespace and recorded_namespace != namespace:
        raise ValueError(
            f"snapshot {source} was captured in namespace '{recorded_namespace}', not '{namespace}'"
        )

    replicas: dict[WorkloadRef, int] = {}
    for index, entry in enumerate(document.get("workloads") or [], start=1):
        try:
            ref = WorkloadRef(kind=WorkloadKind(entry["kind"]), name=str(entry["name"]), namespace=namespace)
            count = int(entry["replicas"])
        except (KeyError, TypeError, ValueError) as error:
            raise ValueError(f"invalid workload entry #{index} in {source}: {entry!r}") from error
        _add_entry(replicas, ref, count, source=source)

    return ReplicaSnapshot(
        namespace=namespace,
        captured_at=str(document.get("captured_at") or ""),
        replicas=replicas,
    )


def _from_legacy_lines(text: str, *, namespace: str, source: Path) -> ReplicaSnapshot:
    replicas: dict[WorkloadRef, int] = {}
    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue
        parts = line.split(":")
        if len(parts) != 3:
            raise ValueError(f"invalid snapshot line {line_number} in {source}: {raw_line!r}")
        tag, name, raw_count = parts
        try:
            kind = WorkloadKind.from_tag(tag)
            # An empty count is how a workload with no ready replicas was recorded.
            count = int(raw_count) if raw_count else 0
        except ValueError as error:
            raise ValueError(f"invalid snapshot line {line_number} in {source}: {raw_line!r}") from error
        _add_entry(replicas, WorkloadRef(kind=kind, name=name, namespace=namespace), count, source=source)

    return ReplicaSnapshot(namespace=namespace, captured_at="", replicas=replicas)


def _add_entry(replicas: dict[WorkloadRef, int], ref: WorkloadRef, count: int, *, source: Path) -> None:
    if ref in replicas:
        raise ValueError(f"duplicate snapshot entry for {ref} in {source}")
    if count < 0:
        raise ValueError(f"negative replica count for {ref} in {source}")
    replicas[ref] = count
