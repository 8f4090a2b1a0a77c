"""
Patch helpers
JSON merge-patch diffs and the create-or-patch flow used for owned resources
"""

import copy
import logging
from typing import Callable, Dict, List, Optional

from kubernetes import client

from route_operator.store import NotFoundError, api_version_for

logger = logging.getLogger(__name__)

PATCHED_METADATA_FIELDS = ('finalizers', 'labels', 'annotations', 'ownerReferences')

_serializer = client.ApiClient()


def merge_patch(before: Dict, after: Dict) -> Dict:
    """
    Compute an RFC 7386 merge patch turning before into after.
    Removed keys map to None, lists are replaced wholesale.
    """
    patch = {}
    for key, value in after.items():
        if key not in before:
            patch[key] = copy.deepcopy(value)
        elif isinstance(value, dict) and isinstance(before[key], dict):
            nested = merge_patch(before[key], value)
            if nested:
                patch[key] = nested
        elif value != before[key]:
            patch[key] = copy.deepcopy(value)

    for key in before:
        if key not in after:
            patch[key] = None

    return patch


def status_and_metadata_diff(baseline: Dict, current: Dict) -> Dict:
    """Merge patch limited to status and the mutable metadata fields"""
    diff = {}

    status = merge_patch({'status': baseline.get('status') or {}},
                         {'status': current.get('status') or {}})
    diff.update(status)

    before_meta = baseline.get('metadata', {})
    after_meta = current.get('metadata', {})
    metadata = merge_patch(
        {k: before_meta[k] for k in PATCHED_METADATA_FIELDS if k in before_meta},
        {k: after_meta[k] for k in PATCHED_METADATA_FIELDS if k in after_meta}
    )
    if metadata:
        diff['metadata'] = metadata

    return diff


def to_dict(model) -> Dict:
    """Serialize a kubernetes client model to its API dict form"""
    return _serializer.sanitize_for_serialization(model)


def owner_reference(owner: Dict, controller: bool = True) -> Dict:
    metadata = owner.get('metadata', {})
    return to_dict(client.V1OwnerReference(
        api_version=owner.get('apiVersion') or api_version_for(owner.get('kind')),
        kind=owner.get('kind'),
        name=metadata.get('name'),
        uid=metadata.get('uid'),
        controller=controller,
        block_owner_deletion=True
    ))


def set_owner_reference(obj: Dict, owner: Dict, controller: bool = True) -> None:
    """Add or refresh the owner reference, keyed by owner uid"""
    reference = owner_reference(owner, controller=controller)
    metadata = obj.setdefault('metadata', {})
    references: List[Dict] = [
        ref for ref in metadata.get('ownerReferences') or []
        if ref.get('uid') != reference['uid']
    ]
    references.append(reference)
    metadata['ownerReferences'] = references


def controller_owner(obj: Dict) -> Optional[Dict]:
    for ref in obj.get('metadata', {}).get('ownerReferences') or []:
        if ref.get('controller'):
            return ref
    return None


def create_or_patch(store, kind: str, namespace: str, name: str,
                    mutate: Callable[[Dict], None]) -> str:
    """
    Create the object if it is missing, otherwise patch only what mutate changed.
    The patch is guarded by the resourceVersion that was read.
    Returns 'created', 'updated' or 'unchanged'.
    """
    try:
        existing = store.get(kind, namespace, name)
    except NotFoundError:
        obj = {
            'apiVersion': api_version_for(kind),
            'kind': kind,
            'metadata': {'name': name, 'namespace': namespace},
        }
        mutate(obj)
        store.create(kind, obj)
        return 'created'

    desired = copy.deepcopy(existing)
    mutate(desired)
    diff = merge_patch(existing, desired)
    if not diff:
        return 'unchanged'

    store.patch(kind, namespace, name, diff,
                expected_version=existing.get('metadata', {}).get('resourceVersion'))
    return 'updated'
