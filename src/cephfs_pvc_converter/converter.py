from __future__ import annotations

from typing import Any, Callable

import structlog

from .config import RunContext
from .errors import ClusterApiError, ConversionError, SafetyGateError
from .k8s import ClusterClient
from .manifests import (
    LAST_APPLIED_ANNOTATION,
    clean_claim_manifest,
    clean_volume_manifest,
    is_csi_volume,
    volume_mounter,
    write_manifest,
)
from .models import AccessMode, ConversionTarget, Mounter
from .waiting import BindingWaiter, wait_until

RECLAIM_RETAIN = "Retain"
RECLAIM_DELETE = "Delete"
# Status codes for which a forced apply recreates the volume object.
RECREATE_ON_STATUS = frozenset({409, 422})

logger = structlog.get_logger()


class VolumeConverter:
    """Converts one bound claim/volume pair to a new access mode and mounter.

    Steps run strictly in order. A failure leaves the pair where it stopped;
    the claim and volume backups in the run directory are the recovery path.
    """

    def __init__(self, *, cluster: ClusterClient, context: RunContext, binding_waiter: BindingWaiter | None = None) -> None:
        self.cluster = cluster
        self.context = context
        self.binding_waiter = binding_waiter or BindingWaiter(cluster=cluster, policy=context.bind_policy)

    def convert(
        self,
        claim_name: str,
        namespace: str,
        desired_access_mode: AccessMode,
        desired_mounter: Mounter,
    ) -> ConversionTarget:
        log = logger.bind(namespace=namespace, claim=claim_name)
        log.info("processing_claim")

        claim, target = self._resolve(claim_name, namespace, desired_access_mode, desired_mounter)
        log = log.bind(volume=target.volume_name)

        log.info("backing_up_claim", path=str(target.claim_backup_path))
        write_manifest(target.claim_backup_path, claim)

        log.info("patching_volume_reclaim_policy", policy=RECLAIM_RETAIN)
        self._set_reclaim_policy(target.volume_name, RECLAIM_RETAIN)
        self._confirm_retained(target.volume_name)

        log.info("deleting_claim")
        self.cluster.delete_claim(namespace, claim_name)
        wait_until(
            lambda: not self.cluster.claim_exists(namespace, claim_name),
            policy=self.context.delete_policy,
            description=f"PVC {namespace}/{claim_name} to be deleted",
        )

        log.info("detaching_volume")
        self.cluster.patch_volume(target.volume_name, {"spec": {"claimRef": None}})

        log.info("patching_volume_access_mode", access_mode=desired_access_mode.value)
        self.cluster.patch_volume(target.volume_name, {"spec": {"accessModes": [desired_access_mode.value]}})

        volume = self.cluster.read_volume(target.volume_name)
        log.info("backing_up_volume", path=str(target.volume_backup_path))
        write_manifest(target.volume_backup_path, volume)

        new_volume = self._derive(
            "volume manifest",
            lambda: clean_volume_manifest(
                volume,
                access_mode=desired_access_mode.value,
                mounter=desired_mounter.value,
            ),
        )
        write_manifest(self.context.new_volume_manifest_path(target.volume_name), new_volume)
        log.info("creating_new_volume", mounter=desired_mounter.value)
        self._apply_volume(new_volume)

        new_claim = self._derive(
            "claim manifest",
            lambda: clean_claim_manifest(claim, access_mode=desired_access_mode.value),
        )
        write_manifest(self.context.new_claim_manifest_path(claim_name), new_claim)
        log.info("creating_new_claim", access_mode=desired_access_mode.value)
        self.cluster.create_claim(namespace, new_claim)

        log.info("removing_last_applied_annotation")
        self.cluster.remove_claim_annotation(namespace, claim_name, LAST_APPLIED_ANNOTATION)

        self.binding_waiter.wait_for_bound(
            namespace=namespace,
            claim_name=claim_name,
            volume_name=target.volume_name,
        )

        log.info("patching_volume_reclaim_policy", policy=RECLAIM_DELETE)
        self._set_reclaim_policy(target.volume_name, RECLAIM_DELETE)
        log.info("claim_converted")
        return target

    def _resolve(
        self,
        claim_name: str,
        namespace: str,
        desired_access_mode: AccessMode,
        desired_mounter: Mounter,
    ) -> tuple[dict[str, Any], ConversionTarget]:
        claim = self.cluster.read_claim(namespace, claim_name)
        volume_name = (claim.get("spec") or {}).get("volumeName")
        if not volume_name:
            raise ConversionError(stage="resolve", reason=f"PVC {namespace}/{claim_name} is not bound to a volume")

        volume = self.cluster.read_volume(volume_name)
        if not is_csi_volume(volume):
            raise ConversionError(
                stage="resolve",
                reason=f"PV {volume_name} is not a CSI volume; its mounter cannot be changed",
            )
        current_access_modes = tuple((volume.get("spec") or {}).get("accessModes") or ())
        logger.info(
            "current_configuration",
            namespace=namespace,
            claim=claim_name,
            volume=volume_name,
            access_modes=list(current_access_modes),
            mounter=volume_mounter(volume),
        )

        target = ConversionTarget(
            namespace=namespace,
            claim_name=claim_name,
            volume_name=volume_name,
            current_access_modes=current_access_modes,
            desired_access_mode=desired_access_mode,
            desired_mounter=desired_mounter,
            claim_backup_path=self.context.claim_backup_path(claim_name),
            volume_backup_path=self.context.volume_backup_path(volume_name),
        )
        return claim, target

    def _set_reclaim_policy(self, volume_name: str, policy: str) -> None:
        self.cluster.patch_volume(volume_name, {"spec": {"persistentVolumeReclaimPolicy": policy}})

    def _confirm_retained(self, volume_name: str) -> None:
        volume = self.cluster.read_volume(volume_name)
        observed = (volume.get("spec") or {}).get("persistentVolumeReclaimPolicy")
        if observed != RECLAIM_RETAIN:
            raise SafetyGateError(volume_name=volume_name, observed_policy=observed)

    def _apply_volume(self, manifest: dict[str, Any]) -> None:
        """Replace the volume object, recreating it when the API refuses the update."""
        name = manifest["metadata"]["name"]
        try:
            self.cluster.replace_volume(manifest)
            return
        except ClusterApiError as error:
            if error.status == 404:
                self.cluster.create_volume(manifest)
                return
            if error.status not in RECREATE_ON_STATUS:
                raise
            logger.info("recreating_volume", volume=name, reason=str(error))

        # Only reached with a Retain policy confirmed; deleting the object keeps the data.
        self.cluster.delete_volume(name)
        wait_until(
            lambda: not self.cluster.volume_exists(name),
            policy=self.context.delete_policy,
            description=f"PV {name} to be deleted",
        )
        self.cluster.create_volume(manifest)

    @staticmethod
    def _derive(description: str, build: Callable[[], dict[str, Any]]) -> dict[str, Any]:
        try:
            return build()
        except (KeyError, TypeError, ValueError) as error:
            raise ConversionError(stage="derive", reason=f"{description}: {error}") from error
