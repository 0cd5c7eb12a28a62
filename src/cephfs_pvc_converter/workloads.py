from __future__ import annotations

from datetime import UTC, datetime

import structlog

from .config import RunContext
from .errors import ValidationError
from .k8s import ClusterClient
from .models import ReplicaSnapshot
from .snapshot import write_snapshot
from .waiting import wait_until

logger = structlog.get_logger()


class WorkloadQuiescer:
    """Scales every Deployment and StatefulSet of a namespace to zero.

    The replica counts are written to the run's snapshot file before the
    first scale-down so that the workloads can always be restored by hand.
    """

    def __init__(self, *, cluster: ClusterClient, context: RunContext) -> None:
        self.cluster = cluster
        self.context = context

    def quiesce(self, namespace: str) -> ReplicaSnapshot:
        log = logger.bind(namespace=namespace)
        log.info("stopping_workloads")

        workloads = self.cluster.list_workloads(namespace)
        snapshot = ReplicaSnapshot(
            namespace=namespace,
            captured_at=datetime.now(tz=UTC).replace(microsecond=0).isoformat(),
            replicas=dict(workloads),
        )
        write_snapshot(self.context.snapshot_file, snapshot)
        log.info("replica_snapshot_written", path=str(self.context.snapshot_file), workloads=len(snapshot))

        for ref, replicas in snapshot:
            log.info("scaling_down_workload", workload=str(ref), replicas=replicas)
            self.cluster.scale_workload(ref, 0)

        deleted = self.cluster.delete_succeeded_pods(namespace)
        log.info("deleted_completed_pods", count=deleted)

        self._wait_for_drain(namespace)
        return snapshot

    def _wait_for_drain(self, namespace: str) -> None:
        log = logger.bind(namespace=namespace)
        log.info("waiting_for_pods_to_stop")

        def _drained() -> bool:
            active = self.cluster.list_active_pods(namespace)
            if active:
                log.debug("pods_still_active", pods=active)
            return not active

        attempts = wait_until(
            _drained,
            policy=self.context.drain_policy,
            description=f"Running/Terminating pods in namespace '{namespace}' to stop",
        )
        log.info("pods_stopped", attempts=attempts)


class WorkloadResumer:
    def __init__(self, *, cluster: ClusterClient) -> None:
        self.cluster = cluster

    def resume(self, namespace: str, snapshot: ReplicaSnapshot) -> None:
        if snapshot.namespace != namespace:
            raise ValidationError(f"Snapshot belongs to namespace '{snapshot.namespace}', not '{namespace}'.")

        log = logger.bind(namespace=namespace)
        log.info("restarting_workloads", workloads=len(snapshot))
        for ref, replicas in snapshot:
            log.info("scaling_workload", workload=str(ref), replicas=replicas)
            self.cluster.scale_workload(ref, replicas)
