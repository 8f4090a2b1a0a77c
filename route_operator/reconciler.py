"""
Patching reconciler
Fetch, reconcile, patch status, classify the outcome for the work queue.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Optional

from route_operator.conditions import ready_condition
from route_operator.errors import NotReadyError
from route_operator.patch import status_and_metadata_diff
from route_operator.store import ConflictError, NotFoundError, ObjectKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Result:
    """What the work queue should do with a key after a reconcile attempt"""

    requeue: bool = False
    requeue_after: Optional[float] = None


class PatchingReconciler:
    """
    Drives one reconcile attempt per key for a single kind.

    The object reconciler gets the fetched object, mutates its status (and, for
    finalizers, its metadata) in place and returns an optional Result. Whatever
    happens in the callback, the status/metadata diff against the fetched copy is
    sent as one conditional patch guarded by the fetched resourceVersion.
    """

    def __init__(self, store, kind: str, object_reconciler):
        self.store = store
        self.kind = kind
        self.object_reconciler = object_reconciler

    def reconcile(self, key: ObjectKey) -> Result:
        try:
            obj = self.store.get(self.kind, key.namespace, key.name)
        except NotFoundError:
            logger.debug(f"{self.kind} {key.namespace}/{key.name} no longer exists, nothing to do")
            return Result()

        baseline = copy.deepcopy(obj)
        resource_version = baseline.get('metadata', {}).get('resourceVersion')
        result = Result()
        error = None

        try:
            with ready_condition(obj):
                result = self.object_reconciler.reconcile_resource(obj) or Result()
        except ConflictError:
            # state was stale; retry from a fresh read instead of publishing it
            raise
        except Exception as e:
            error = e

        diff = status_and_metadata_diff(baseline, obj)
        try:
            self.store.patch(self.kind, key.namespace, key.name, diff, expected_version=resource_version)
        except NotFoundError:
            logger.debug(f"{self.kind} {key.namespace}/{key.name} disappeared before its status was patched")
            return Result()

        if error is None:
            return result

        if isinstance(error, NotReadyError):
            logger.info(f"{self.kind} {key.namespace}/{key.name} not ready: reason={error.reason} {error}")
            if error.no_requeue:
                return Result()
            if error.requeue_after:
                return Result(requeue_after=error.requeue_after)
            return Result(requeue=True)

        logger.error(f"Failed to reconcile {self.kind} {key.namespace}/{key.name}: {error}", exc_info=error)
        raise error
