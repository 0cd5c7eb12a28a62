from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
import os
import re

from .errors import ArtifactError, ValidationError
from .waiting import PollPolicy

DEFAULT_STORAGE_CLASS = "ceph-cephfs-sc"
RUN_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
NAMESPACE_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


@dataclass(frozen=True)
class AppConfig:
    work_dir: Path = Path(os.getenv("CPVC_WORK_DIR", "./conversion_pvc_cephfs"))
    storage_class: str = os.getenv("CPVC_STORAGE_CLASS", DEFAULT_STORAGE_CLASS)
    drain_poll_seconds: float = float(os.getenv("CPVC_DRAIN_POLL_SECONDS", "1"))
    drain_timeout_seconds: float = float(os.getenv("CPVC_DRAIN_TIMEOUT_SECONDS", "600"))
    bind_poll_seconds: float = float(os.getenv("CPVC_BIND_POLL_SECONDS", "3"))
    bind_timeout_seconds: float = float(os.getenv("CPVC_BIND_TIMEOUT_SECONDS", "600"))
    delete_poll_seconds: float = float(os.getenv("CPVC_DELETE_POLL_SECONDS", "2"))
    delete_timeout_seconds: float = float(os.getenv("CPVC_DELETE_TIMEOUT_SECONDS", "300"))


@dataclass(frozen=True)
class RunContext:
    """Everything a migration run shares across its steps, fixed at startup."""

    cluster_name: str
    namespace: str
    timestamp: str
    execution_dir: Path
    storage_class: str = DEFAULT_STORAGE_CLASS
    drain_policy: PollPolicy = field(default_factory=lambda: PollPolicy(interval_seconds=1, timeout_seconds=600))
    bind_policy: PollPolicy = field(default_factory=lambda: PollPolicy(interval_seconds=3, timeout_seconds=600))
    delete_policy: PollPolicy = field(default_factory=lambda: PollPolicy(interval_seconds=2, timeout_seconds=300))

    @property
    def log_file(self) -> Path:
        return self.execution_dir / f"conversion_{self.timestamp}.log"

    @property
    def snapshot_file(self) -> Path:
        return self.execution_dir / f"workloads_backup_{self.timestamp}.yaml"

    def claim_backup_path(self, claim_name: str) -> Path:
        return self.execution_dir / f"pvc_{_safe(claim_name)}_ns_{_safe(self.namespace)}_backup.yaml"

    def volume_backup_path(self, volume_name: str) -> Path:
        return self.execution_dir / f"pv_{_safe(volume_name)}_ns_{_safe(self.namespace)}_backup.yaml"

    def new_claim_manifest_path(self, claim_name: str) -> Path:
        return self.execution_dir / f"new_pvc_{_safe(claim_name)}_ns_{_safe(self.namespace)}.yaml"

    def new_volume_manifest_path(self, volume_name: str) -> Path:
        return self.execution_dir / f"new_pv_{_safe(volume_name)}_ns_{_safe(self.namespace)}.yaml"


def build_run_context(
    config: AppConfig,
    *,
    cluster_name: str,
    namespace: str,
    now: datetime | None = None,
) -> RunContext:
    timestamp = (now or datetime.now()).strftime(RUN_TIMESTAMP_FORMAT)
    return RunContext(
        cluster_name=cluster_name,
        namespace=namespace,
        timestamp=timestamp,
        execution_dir=config.work_dir / _safe(cluster_name) / _safe(namespace),
        storage_class=config.storage_class,
        drain_policy=PollPolicy(
            interval_seconds=config.drain_poll_seconds,
            timeout_seconds=config.drain_timeout_seconds,
        ),
        bind_policy=PollPolicy(
            interval_seconds=config.bind_poll_seconds,
            timeout_seconds=config.bind_timeout_seconds,
        ),
        delete_policy=PollPolicy(
            interval_seconds=config.delete_poll_seconds,
            timeout_seconds=config.delete_timeout_seconds,
        ),
    )


def validate_namespace(namespace: str) -> str:
    name = namespace.strip()
    if not name:
        raise ValidationError("Namespace is required.")
    if len(name) > 63 or not NAMESPACE_PATTERN.match(name):
        raise ValidationError(f"Namespace '{name}' is not a valid Kubernetes namespace name.")
    return name


def ensure_directories(context: RunContext) -> None:
    try:
        context.execution_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise ArtifactError(path=context.execution_dir, reason=error.strerror or str(error)) from error


def _safe(value: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", value)
    return sanitized or "unknown"
