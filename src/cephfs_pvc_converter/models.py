from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Iterator, Mapping


class AccessMode(str, Enum):
    READ_WRITE_ONCE = "ReadWriteOnce"
    READ_WRITE_MANY = "ReadWriteMany"


class Mounter(str, Enum):
    KERNEL = "kernel"
    FUSE = "fuse"


class WorkloadKind(str, Enum):
    DEPLOYMENT = "Deployment"
    STATEFUL_SET = "StatefulSet"

    @property
    def tag(self) -> str:
        return _KIND_TAGS[self]

    @classmethod
    def from_tag(cls, tag: str) -> WorkloadKind:
        for kind, kind_tag in _KIND_TAGS.items():
            if kind_tag == tag:
                return kind
        raise ValueError(f"unknown workload kind tag: {tag!r}")


_KIND_TAGS = {
    WorkloadKind.DEPLOYMENT: "dp",
    WorkloadKind.STATEFUL_SET: "sf",
}


@dataclass(frozen=True, order=True)
class WorkloadRef:
    kind: WorkloadKind
    name: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ReplicaSnapshot:
    """Replica counts recorded for each workload at quiesce time."""

    namespace: str
    captured_at: str
    replicas: Mapping[WorkloadRef, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for ref, count in self.replicas.items():
            if count < 0:
                raise ValueError(f"replica count for {ref} must be >= 0, got {count}")
            if ref.namespace != self.namespace:
                raise ValueError(f"{ref} does not belong to namespace '{self.namespace}'")
        ordered = {ref: self.replicas[ref] for ref in sorted(self.replicas)}
        object.__setattr__(self, "replicas", MappingProxyType(ordered))

    def __iter__(self) -> Iterator[tuple[WorkloadRef, int]]:
        return iter(self.replicas.items())

    def __len__(self) -> int:
        return len(self.replicas)


@dataclass(frozen=True)
class ClaimRecord:
    namespace: str
    name: str
    storage_class: str | None
    volume_name: str | None
    phase: str
    access_modes: tuple[str, ...]
    mounter: str | None = None


@dataclass(frozen=True)
class ConversionTarget:
    namespace: str
    claim_name: str
    volume_name: str
    current_access_modes: tuple[str, ...]
    desired_access_mode: AccessMode
    desired_mounter: Mounter
    claim_backup_path: Path
    volume_backup_path: Path


@dataclass(frozen=True)
class MigrationReport:
    namespace: str
    converted_claims: tuple[str, ...]
    snapshot: ReplicaSnapshot
    snapshot_path: Path | None = None
