from __future__ import annotations

from typing import Any

import structlog

from .config import RunContext
from .converter import VolumeConverter
from .errors import PreconditionError
from .k8s import ClusterClient
from .manifests import volume_mounter
from .models import AccessMode, ClaimRecord, MigrationReport, Mounter
from .workloads import WorkloadQuiescer, WorkloadResumer

logger = structlog.get_logger()


class Orchestrator:
    """Runs quiesce, per-claim conversion and resume for one namespace."""

    def __init__(
        self,
        *,
        cluster: ClusterClient,
        context: RunContext,
        quiescer: WorkloadQuiescer | None = None,
        converter: VolumeConverter | None = None,
        resumer: WorkloadResumer | None = None,
    ) -> None:
        self.cluster = cluster
        self.context = context
        self.quiescer = quiescer or WorkloadQuiescer(cluster=cluster, context=context)
        self.converter = converter or VolumeConverter(cluster=cluster, context=context)
        self.resumer = resumer or WorkloadResumer(cluster=cluster)

    def run(self, namespace: str, desired_access_mode: AccessMode, desired_mounter: Mounter) -> MigrationReport:
        log = logger.bind(namespace=namespace)
        log.info(
            "migration_started",
            cluster=self.context.cluster_name,
            access_mode=desired_access_mode.value,
            mounter=desired_mounter.value,
        )

        eligible = tuple(claim.name for claim in self.eligible_claims(namespace))
        log.info("eligible_claims", claims=list(eligible))

        snapshot = self.quiescer.quiesce(namespace)
        for claim_name in eligible:
            self.converter.convert(claim_name, namespace, desired_access_mode, desired_mounter)
        self.resumer.resume(namespace, snapshot)

        log.info("migration_finished", converted=len(eligible))
        return MigrationReport(
            namespace=namespace,
            converted_claims=eligible,
            snapshot=snapshot,
            snapshot_path=self.context.snapshot_file,
        )

    def eligible_claims(self, namespace: str) -> list[ClaimRecord]:
        """Check the namespace preconditions and return the claims to convert, sorted by name."""
        if not self.cluster.namespace_exists(namespace):
            raise PreconditionError(f"Namespace {namespace} does not exist in cluster {self.context.cluster_name}")

        storage_class = self.context.storage_class
        records = [
            _claim_record(namespace, claim)
            for claim in self.cluster.list_claims(namespace)
            if (claim.get("spec") or {}).get("storageClassName") == storage_class
        ]
        if not records:
            raise PreconditionError(
                f"Namespace {namespace} does not contain any PVCs of storage class {storage_class}"
            )
        return sorted(records, key=lambda record: record.name)

    def plan(self, namespace: str) -> list[ClaimRecord]:
        """Describe the eligible claims and their current volume settings without changing anything."""
        planned: list[ClaimRecord] = []
        for record in self.eligible_claims(namespace):
            mounter = None
            access_modes = record.access_modes
            if record.volume_name:
                volume = self.cluster.read_volume(record.volume_name)
                mounter = volume_mounter(volume)
                access_modes = tuple((volume.get("spec") or {}).get("accessModes") or access_modes)
            planned.append(
                ClaimRecord(
                    namespace=record.namespace,
                    name=record.name,
                    storage_class=record.storage_class,
                    volume_name=record.volume_name,
                    phase=record.phase,
                    access_modes=access_modes,
                    mounter=mounter,
                )
            )
        return planned


def _claim_record(namespace: str, claim: dict[str, Any]) -> ClaimRecord:
    spec = claim.get("spec") or {}
    status = claim.get("status") or {}
    return ClaimRecord(
        namespace=namespace,
        name=(claim.get("metadata") or {}).get("name", ""),
        storage_class=spec.get("storageClassName"),
        volume_name=spec.get("volumeName"),
        phase=status.get("phase") or "Unknown",
        access_modes=tuple(spec.get("accessModes") or ()),
    )
