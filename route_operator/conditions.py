"""
Ready condition handling
Every reconcile attempt publishes a Ready condition, whichever way it exits.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

from route_operator.errors import NotReadyError

READY = 'Ready'
UNKNOWN_ERROR = 'UnknownError'


def now_timestamp() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


class ReadyConditionBuilder:
    """Builds the Ready condition for an object, Unknown until told otherwise"""

    def __init__(self, obj: Dict):
        self.observed_generation = obj.get('metadata', {}).get('generation', 0)
        self.status = 'Unknown'
        self.reason = None
        self.message = ''

    def with_reason(self, reason: Optional[str]) -> 'ReadyConditionBuilder':
        if reason:
            self.reason = reason
        return self

    def with_error(self, err: Optional[BaseException]) -> 'ReadyConditionBuilder':
        if err is None:
            return self
        self.status = 'False'
        self.message = str(err)
        if not self.reason:
            self.reason = UNKNOWN_ERROR
        return self

    def ready(self) -> 'ReadyConditionBuilder':
        self.status = 'True'
        self.message = ''
        return self

    def build(self) -> Dict:
        if self.reason:
            reason = self.reason
        elif self.status == 'True':
            reason = READY
        else:
            reason = 'Unknown'

        return {
            'type': READY,
            'status': self.status,
            'reason': reason,
            'message': self.message,
            'observedGeneration': self.observed_generation,
        }


def find_status_condition(conditions: List[Dict], condition_type: str) -> Optional[Dict]:
    for condition in conditions:
        if condition.get('type') == condition_type:
            return condition
    return None


def set_status_condition(conditions: List[Dict], new_condition: Dict) -> None:
    """Upsert a condition by type; lastTransitionTime only moves when status changes"""
    existing = find_status_condition(conditions, new_condition['type'])
    if existing is None:
        condition = dict(new_condition)
        condition.setdefault('lastTransitionTime', now_timestamp())
        conditions.append(condition)
        return

    if existing.get('status') != new_condition['status']:
        existing['status'] = new_condition['status']
        existing['lastTransitionTime'] = new_condition.get('lastTransitionTime') or now_timestamp()

    existing['reason'] = new_condition.get('reason')
    existing['message'] = new_condition.get('message')
    existing['observedGeneration'] = new_condition.get('observedGeneration')


@contextmanager
def ready_condition(obj: Dict):
    """
    Yields a ReadyConditionBuilder and always writes its condition to
    obj.status.conditions on exit. A clean exit marks the object ready.
    """
    builder = ReadyConditionBuilder(obj)
    try:
        yield builder
    except NotReadyError as e:
        builder.with_reason(e.reason).with_error(e)
        raise
    except Exception as e:
        builder.with_error(e)
        raise
    else:
        builder.ready()
    finally:
        status = obj.get('status')
        if status is None:
            status = obj['status'] = {}
        set_status_condition(status.setdefault('conditions', []), builder.build())
