"""
Shared test fixtures: an in-memory store with resourceVersion concurrency,
finalizer-aware deletion and owner-reference cascade.
"""

import copy
import itertools
import uuid

import pytest

from route_operator.config import OperatorConfig
from route_operator.patch import to_dict
from route_operator.reconciler import PatchingReconciler
from route_operator.routes import RouteReconciler
from route_operator.store import ConflictError, NotFoundError, ObjectKey, api_version_for

NAMESPACE = 'space-1'
ROOT_NAMESPACE = 'root-ns'


def apply_merge_patch(target, patch):
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


def _matches_selector(obj, label_selector):
    if not label_selector:
        return True
    labels = obj.get('metadata', {}).get('labels') or {}
    for clause in label_selector.split(','):
        key, _, value = clause.partition('=')
        if labels.get(key.strip()) != value.strip():
            return False
    return True


class FakeStore:
    def __init__(self):
        self.objects = {}
        self.patches = []
        self.failures = {}
        self._versions = itertools.count(1)
        self._version = '0'

    def _bump(self):
        self._version = str(next(self._versions))
        return self._version

    def fail_on(self, verb, kind, error):
        self.failures[(verb, kind)] = error

    def _maybe_fail(self, verb, kind):
        error = self.failures.get((verb, kind))
        if error is not None:
            raise error

    def add(self, obj):
        obj = copy.deepcopy(to_dict(obj))
        kind = obj['kind']
        obj.setdefault('apiVersion', api_version_for(kind))
        metadata = obj.setdefault('metadata', {})
        metadata.setdefault('uid', str(uuid.uuid4()))
        metadata.setdefault('generation', 1)
        metadata['resourceVersion'] = self._bump()
        self.objects[ObjectKey(kind, metadata['namespace'], metadata['name'])] = obj
        return copy.deepcopy(obj)

    def find(self, kind, namespace, name):
        obj = self.objects.get(ObjectKey(kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def get(self, kind, namespace, name):
        self._maybe_fail('get', kind)
        obj = self.find(kind, namespace, name)
        if obj is None:
            raise NotFoundError(f"{kind} {namespace}/{name} not found")
        return obj

    def list_with_version(self, kind, namespace=None, label_selector=None):
        self._maybe_fail('list', kind)
        items = [
            copy.deepcopy(obj) for key, obj in sorted(self.objects.items())
            if key.kind == kind and (not namespace or key.namespace == namespace)
            and _matches_selector(obj, label_selector)
        ]
        return items, self._version

    def list(self, kind, namespace=None, label_selector=None):
        items, _ = self.list_with_version(kind, namespace, label_selector)
        return items

    def create(self, kind, obj):
        self._maybe_fail('create', kind)
        obj = to_dict(obj)
        metadata = obj['metadata']
        if ObjectKey(kind, metadata['namespace'], metadata['name']) in self.objects:
            raise ConflictError(f"{kind} {metadata['namespace']}/{metadata['name']} already exists")
        obj = dict(obj, kind=kind)
        return self.add(obj)

    def patch(self, kind, namespace, name, diff, expected_version=None):
        self.patches.append((ObjectKey(kind, namespace, name), copy.deepcopy(diff), expected_version))
        self._maybe_fail('patch', kind)
        if not diff:
            return None

        key = ObjectKey(kind, namespace, name)
        current = self.objects.get(key)
        if current is None:
            raise NotFoundError(f"{kind} {namespace}/{name} not found")
        if expected_version and expected_version != current['metadata']['resourceVersion']:
            raise ConflictError(f"{kind} {namespace}/{name} has changed")

        updated = apply_merge_patch(current, diff)
        if updated.get('spec') != current.get('spec'):
            updated['metadata']['generation'] = current['metadata'].get('generation', 1) + 1
        updated['metadata']['resourceVersion'] = self._bump()
        self.objects[key] = updated

        if updated['metadata'].get('deletionTimestamp') and not updated['metadata'].get('finalizers'):
            self._remove(key)
        return copy.deepcopy(updated)

    def delete(self, kind, namespace, name):
        self._maybe_fail('delete', kind)
        key = ObjectKey(kind, namespace, name)
        current = self.objects.get(key)
        if current is None:
            raise NotFoundError(f"{kind} {namespace}/{name} not found")

        if current['metadata'].get('finalizers'):
            current['metadata']['deletionTimestamp'] = '2024-01-01T00:00:00Z'
            current['metadata']['resourceVersion'] = self._bump()
            return
        self._remove(key)

    def _remove(self, key):
        removed = self.objects.pop(key)
        uid = removed['metadata']['uid']
        dependents = [
            dependent_key for dependent_key, obj in self.objects.items()
            if any(ref.get('uid') == uid for ref in obj['metadata'].get('ownerReferences') or [])
        ]
        for dependent_key in dependents:
            if dependent_key in self.objects:
                self._remove(dependent_key)

    def of_kind(self, kind, namespace=NAMESPACE):
        return {key.name: copy.deepcopy(obj) for key, obj in self.objects.items()
                if key.kind == kind and key.namespace == namespace}


def make_domain(name='bar-com', dns_name='bar.com', namespace=ROOT_NAMESPACE):
    return {
        'kind': 'Domain',
        'metadata': {'name': name, 'namespace': namespace},
        'spec': {'name': dns_name},
    }


def make_route(name, host='foo', path='', domain='bar-com', destinations=None, namespace=NAMESPACE):
    return {
        'kind': 'Route',
        'metadata': {'name': name, 'namespace': namespace},
        'spec': {
            'host': host,
            'path': path,
            'protocol': 'http',
            'domainRef': {'name': domain, 'namespace': ROOT_NAMESPACE},
            'destinations': list(destinations or []),
        },
    }


def make_destination(guid, app='a1', process_type='web', port=None, protocol=None):
    destination = {'guid': guid, 'appRef': {'name': app}, 'processType': process_type}
    if port is not None:
        destination['port'] = port
    if protocol is not None:
        destination['protocol'] = protocol
    return destination


def make_app(name, droplet_ref=None, namespace=NAMESPACE):
    spec = {'displayName': name}
    if droplet_ref:
        spec['currentDropletRef'] = {'name': droplet_ref}
    return {'kind': 'App', 'metadata': {'name': name, 'namespace': namespace}, 'spec': spec}


def make_build(name, app, ports=None, with_droplet=True, namespace=NAMESPACE):
    build = {'kind': 'Build', 'metadata': {'name': name, 'namespace': namespace},
             'spec': {'appRef': {'name': app}}, 'status': {}}
    if with_droplet:
        build['status']['droplet'] = {'processTypes': [{'type': 'web', 'command': 'run'}],
                                      'ports': list(ports or [])}
    return build


def route_key(name, namespace=NAMESPACE):
    return ObjectKey('Route', namespace, name)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def operator_config():
    return OperatorConfig(domain_requeue_seconds=5)


@pytest.fixture
def route_engine(store, operator_config):
    return PatchingReconciler(store, 'Route', RouteReconciler(store, operator_config))
