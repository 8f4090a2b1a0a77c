"""
Tests for the Ready condition builder and the ready_condition scope.
"""

import pytest

from route_operator.conditions import (
    ReadyConditionBuilder,
    find_status_condition,
    ready_condition,
    set_status_condition,
)
from route_operator.errors import NotReadyError


def obj(generation=2, status=None):
    result = {'metadata': {'name': 'r1', 'generation': generation}}
    if status is not None:
        result['status'] = status
    return result


# ── Builder ──────────────────────────────────────────────────────────


class TestReadyConditionBuilder:
    def test_defaults_to_unknown(self):
        condition = ReadyConditionBuilder(obj()).build()
        assert condition == {
            'type': 'Ready',
            'status': 'Unknown',
            'reason': 'Unknown',
            'message': '',
            'observedGeneration': 2,
        }

    def test_ready(self):
        condition = ReadyConditionBuilder(obj()).ready().build()
        assert condition['status'] == 'True'
        assert condition['reason'] == 'Ready'

    def test_error_without_reason(self):
        condition = ReadyConditionBuilder(obj()).with_error(ValueError('bad')).build()
        assert condition['status'] == 'False'
        assert condition['reason'] == 'UnknownError'
        assert condition['message'] == 'bad'

    def test_error_keeps_reason(self):
        builder = ReadyConditionBuilder(obj()).with_reason('InvalidDomainRef')
        condition = builder.with_error(ValueError('gone')).build()
        assert condition['reason'] == 'InvalidDomainRef'

    def test_none_error_is_noop(self):
        condition = ReadyConditionBuilder(obj()).with_error(None).build()
        assert condition['status'] == 'Unknown'

    def test_ready_clears_message(self):
        builder = ReadyConditionBuilder(obj()).with_error(ValueError('bad'))
        assert builder.ready().build()['message'] == ''


class TestSetStatusCondition:
    def test_appends_new(self):
        conditions = []
        set_status_condition(conditions, {'type': 'Ready', 'status': 'True', 'reason': 'Ready', 'message': ''})
        assert len(conditions) == 1
        assert conditions[0]['lastTransitionTime']

    def test_same_status_keeps_transition_time(self):
        conditions = [{'type': 'Ready', 'status': 'True', 'reason': 'Ready',
                       'lastTransitionTime': '2020-01-01T00:00:00Z'}]
        set_status_condition(conditions, {'type': 'Ready', 'status': 'True', 'reason': 'Other', 'message': 'x'})
        assert conditions[0]['lastTransitionTime'] == '2020-01-01T00:00:00Z'
        assert conditions[0]['reason'] == 'Other'
        assert conditions[0]['message'] == 'x'

    def test_status_change_moves_transition_time(self):
        conditions = [{'type': 'Ready', 'status': 'True', 'lastTransitionTime': '2020-01-01T00:00:00Z'}]
        set_status_condition(conditions, {'type': 'Ready', 'status': 'False', 'reason': 'X', 'message': ''})
        assert conditions[0]['status'] == 'False'
        assert conditions[0]['lastTransitionTime'] != '2020-01-01T00:00:00Z'

    def test_find_by_type(self):
        conditions = [{'type': 'Other'}, {'type': 'Ready', 'status': 'True'}]
        assert find_status_condition(conditions, 'Ready')['status'] == 'True'
        assert find_status_condition(conditions, 'Missing') is None


# ── Scope ────────────────────────────────────────────────────────────


class TestReadyConditionScope:
    def test_clean_exit_marks_ready(self):
        target = obj()
        with ready_condition(target):
            pass
        assert target['status']['conditions'][0]['status'] == 'True'

    def test_not_ready_error(self):
        target = obj(status={})
        with pytest.raises(NotReadyError):
            with ready_condition(target):
                raise NotReadyError(reason='Waiting', message='later')

        condition = target['status']['conditions'][0]
        assert condition['status'] == 'False'
        assert condition['reason'] == 'Waiting'
        assert condition['message'] == 'later'

    def test_other_error(self):
        target = obj()
        with pytest.raises(KeyError):
            with ready_condition(target):
                raise KeyError('x')

        assert target['status']['conditions'][0]['reason'] == 'UnknownError'

    def test_replaces_existing_ready(self):
        target = obj(status={'conditions': [{'type': 'Ready', 'status': 'False', 'reason': 'Old'}]})
        with ready_condition(target):
            pass
        assert len(target['status']['conditions']) == 1
        assert target['status']['conditions'][0]['reason'] == 'Ready'
