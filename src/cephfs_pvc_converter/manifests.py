"""Structured edits and YAML backups of PersistentVolume/Claim manifests."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml

from .errors import ArtifactError

LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"

SERVER_MANAGED_METADATA_FIELDS = (
    "uid",
    "resourceVersion",
    "creationTimestamp",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "generation",
    "managedFields",
    "selfLink",
)

# Binding bookkeeping written by the PV controller; a recreated object starts unbound.
BINDING_ANNOTATIONS = (
    "pv.kubernetes.io/bind-completed",
    "pv.kubernetes.io/bound-by-controller",
    LAST_APPLIED_ANNOTATION,
)


def write_manifest(path: Path, manifest: dict[str, Any]) -> Path:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(manifest, handle, default_flow_style=False, sort_keys=False)
    except OSError as error:
        raise ArtifactError(path=path, reason=error.strerror or str(error)) from error
    return path


def volume_mounter(volume: dict[str, Any]) -> str | None:
    attributes = ((volume.get("spec") or {}).get("csi") or {}).get("volumeAttributes") or {}
    return attributes.get("mounter")


def is_csi_volume(volume: dict[str, Any]) -> bool:
    return bool((volume.get("spec") or {}).get("csi"))


def clean_volume_manifest(volume: dict[str, Any], *, access_mode: str, mounter: str) -> dict[str, Any]:
    """Return a creation manifest for ``volume`` with the new mode and mounter."""
    manifest = _neat(volume, kind="PersistentVolume")
    spec = manifest.setdefault("spec", {})
    spec.pop("claimRef", None)
    spec["accessModes"] = [access_mode]

    csi = spec.get("csi")
    if not isinstance(csi, dict):
        raise ValueError(f"PersistentVolume '{manifest['metadata'].get('name')}' has no CSI source to set a mounter on")
    attributes = csi.get("volumeAttributes") or {}
    attributes["mounter"] = mounter
    csi["volumeAttributes"] = attributes
    return manifest


def clean_claim_manifest(claim: dict[str, Any], *, access_mode: str) -> dict[str, Any]:
    """Return a creation manifest for ``claim`` requesting ``access_mode``.

    ``spec.volumeName`` is kept so the new claim binds to the same volume.
    """
    manifest = _neat(claim, kind="PersistentVolumeClaim")
    manifest.setdefault("spec", {})["accessModes"] = [access_mode]
    return manifest


def _neat(resource: dict[str, Any], *, kind: str) -> dict[str, Any]:
    manifest = copy.deepcopy(resource)
    manifest.pop("status", None)
    manifest.setdefault("apiVersion", "v1")
    manifest.setdefault("kind", kind)

    metadata = manifest.setdefault("metadata", {})
    for field_name in SERVER_MANAGED_METADATA_FIELDS:
        metadata.pop(field_name, None)

    annotations = metadata.get("annotations") or {}
    for annotation in BINDING_ANNOTATIONS:
        annotations.pop(annotation, None)
    if annotations:
        metadata["annotations"] = annotations
    else:
        metadata.pop("annotations", None)
    return manifest
