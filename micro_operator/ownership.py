from __future__ import annotations

from kubernetes.client import V1Deployment, V1ObjectMeta, V1OwnerReference

from .errors import OwnershipError
from .models import Micro


def controller_of(deployment: V1Deployment) -> V1OwnerReference | None:
    meta = deployment.metadata
    for ref in (meta.owner_references if meta else None) or []:
        if ref.controller:
            return ref
    return None


def set_controller_reference(owner: Micro, deployment: V1Deployment) -> None:
    """Make owner the controller of deployment (in memory only).

    Garbage collection of the Deployment when the Micro is deleted hinges on
    this reference, so a Deployment may only ever have one controller.
    """
    if not owner.metadata.uid:
        raise OwnershipError(f"Micro {owner.namespace}/{owner.name} has no uid; cannot own objects")
    if deployment.metadata is None:
        deployment.metadata = V1ObjectMeta()
    meta = deployment.metadata
    if meta.namespace and meta.namespace != owner.namespace:
        raise OwnershipError(
            f"cross-namespace owner references are disallowed: owner {owner.namespace}/{owner.name}, "
            f"object namespace {meta.namespace}"
        )

    ref = V1OwnerReference(
        api_version=owner.api_version,
        kind=owner.kind,
        name=owner.name,
        uid=owner.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )

    existing = controller_of(deployment)
    if existing is not None and existing.uid != ref.uid:
        raise OwnershipError(
            f"Deployment {meta.name} is already controlled by {existing.kind} {existing.name}"
        )

    refs = [r for r in (meta.owner_references or []) if r.uid != ref.uid]
    refs.append(ref)
    meta.owner_references = refs
