"""
Resource store client
Thin wrapper over the Kubernetes API that speaks in plain dicts and typed errors
"""

import logging
from collections import namedtuple
from typing import Dict, Iterator, List, Optional, Tuple

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

logger = logging.getLogger(__name__)


ResourceKind = namedtuple('ResourceKind', ['kind', 'group', 'version', 'plural'])

ObjectKey = namedtuple('ObjectKey', ['kind', 'namespace', 'name'])

ROUTE_GROUP = 'networking.zengarden.space'
APPS_GROUP = 'apps.zengarden.space'
CONTOUR_GROUP = 'projectcontour.io'

KINDS = {
    'Route': ResourceKind('Route', ROUTE_GROUP, 'v1', 'routes'),
    'Domain': ResourceKind('Domain', ROUTE_GROUP, 'v1', 'domains'),
    'App': ResourceKind('App', APPS_GROUP, 'v1', 'apps'),
    'Build': ResourceKind('Build', APPS_GROUP, 'v1', 'builds'),
    'HTTPProxy': ResourceKind('HTTPProxy', CONTOUR_GROUP, 'v1', 'httpproxies'),
    'Service': ResourceKind('Service', '', 'v1', 'services'),
}

# CoreV1Api method suffixes for the core kinds we manage
CORE_METHODS = {
    'Service': 'namespaced_service',
}

# Core kinds default to strategic merge, which merges Service ports by port number
MERGE_PATCH = 'application/merge-patch+json'


class StoreError(Exception):
    """Base class for store failures, wraps the underlying ApiException"""

    def __init__(self, message, api_exception=None):
        super().__init__(message)
        self.api_exception = api_exception


class NotFoundError(StoreError):
    pass


class ConflictError(StoreError):
    """The object changed since it was read, or already exists"""


class ExpiredError(StoreError):
    """The watch resourceVersion is too old (410 Gone)"""


def api_version_for(kind: str) -> str:
    resource = KINDS[kind]
    if not resource.group:
        return resource.version
    return f"{resource.group}/{resource.version}"


def key_for(obj: Dict) -> ObjectKey:
    metadata = obj.get('metadata', {})
    return ObjectKey(obj.get('kind', ''), metadata.get('namespace', ''), metadata.get('name', ''))


def translate_api_exception(e: ApiException, what: str) -> StoreError:
    if e.status == 404:
        return NotFoundError(f"{what} not found", e)
    if e.status == 409:
        return ConflictError(f"conflict on {what}: {e.reason}", e)
    if e.status == 410:
        return ExpiredError(f"resource version expired for {what}", e)
    return StoreError(f"request for {what} failed ({e.status}): {e.reason}", e)


class KubeStore:
    """Store client backed by the Kubernetes API server"""

    def __init__(self, api_client=None):
        self.api_client = api_client or client.ApiClient()
        self.v1 = client.CoreV1Api(self.api_client)
        self.custom_api = client.CustomObjectsApi(self.api_client)

    def _to_dict(self, kind: str, obj) -> Dict:
        if isinstance(obj, dict):
            data = obj
        else:
            data = self.api_client.sanitize_for_serialization(obj)
        data.setdefault('apiVersion', api_version_for(kind))
        data.setdefault('kind', kind)
        return data

    def _core(self, verb: str, kind: str):
        return getattr(self.v1, f"{verb}_{CORE_METHODS[kind]}")

    def get(self, kind: str, namespace: str, name: str) -> Dict:
        resource = KINDS[kind]
        try:
            if not resource.group:
                obj = self._core('read', kind)(name=name, namespace=namespace)
            else:
                obj = self.custom_api.get_namespaced_custom_object(
                    group=resource.group,
                    version=resource.version,
                    namespace=namespace,
                    plural=resource.plural,
                    name=name
                )
        except ApiException as e:
            raise translate_api_exception(e, f"{kind} {namespace}/{name}") from e
        return self._to_dict(kind, obj)

    def list_with_version(self, kind: str, namespace: Optional[str] = None,
                          label_selector: Optional[str] = None) -> Tuple[List[Dict], Optional[str]]:
        """List objects, returning them together with the list resourceVersion"""
        resource = KINDS[kind]
        kwargs = {}
        if label_selector:
            kwargs['label_selector'] = label_selector

        try:
            if not resource.group:
                if namespace:
                    result = self._core('list', kind)(namespace=namespace, **kwargs)
                else:
                    result = getattr(self.v1, f"list_{resource.plural[:-1]}_for_all_namespaces")(**kwargs)
                items = [self._to_dict(kind, item) for item in result.items]
                return items, result.metadata.resource_version

            if namespace:
                result = self.custom_api.list_namespaced_custom_object(
                    group=resource.group,
                    version=resource.version,
                    namespace=namespace,
                    plural=resource.plural,
                    **kwargs
                )
            else:
                result = self.custom_api.list_cluster_custom_object(
                    group=resource.group,
                    version=resource.version,
                    plural=resource.plural,
                    **kwargs
                )
        except ApiException as e:
            raise translate_api_exception(e, f"{kind} list") from e

        items = [self._to_dict(kind, item) for item in result.get('items', [])]
        return items, result.get('metadata', {}).get('resourceVersion')

    def list(self, kind: str, namespace: Optional[str] = None,
             label_selector: Optional[str] = None) -> List[Dict]:
        items, _ = self.list_with_version(kind, namespace, label_selector)
        return items

    def create(self, kind: str, obj: Dict) -> Dict:
        resource = KINDS[kind]
        body = self._to_dict(kind, obj)
        namespace = body['metadata']['namespace']
        name = body['metadata'].get('name')

        try:
            if not resource.group:
                created = self._core('create', kind)(namespace=namespace, body=body)
            else:
                created = self.custom_api.create_namespaced_custom_object(
                    group=resource.group,
                    version=resource.version,
                    namespace=namespace,
                    plural=resource.plural,
                    body=body
                )
        except ApiException as e:
            raise translate_api_exception(e, f"{kind} {namespace}/{name}") from e

        logger.debug(f"Created {kind} {namespace}/{name}")
        return self._to_dict(kind, created)

    def patch(self, kind: str, namespace: str, name: str, diff: Dict,
              expected_version: Optional[str] = None) -> Optional[Dict]:
        """
        Apply a merge patch. When expected_version is given the API server rejects
        the patch with 409 if the object changed since it was read.
        The status part goes to the status subresource first, then metadata/spec.
        An empty diff issues no request.
        """
        if not diff:
            return None

        resource = KINDS[kind]
        what = f"{kind} {namespace}/{name}"
        status_part = {k: v for k, v in diff.items() if k == 'status'}
        main_part = {k: v for k, v in diff.items() if k != 'status'}
        version = expected_version
        result = None

        try:
            if status_part and resource.group:
                body = dict(status_part)
                if version:
                    body['metadata'] = {'resourceVersion': version}
                result = self.custom_api.patch_namespaced_custom_object_status(
                    group=resource.group,
                    version=resource.version,
                    namespace=namespace,
                    plural=resource.plural,
                    name=name,
                    body=body
                )
                version = result.get('metadata', {}).get('resourceVersion', version)
            elif status_part:
                main_part.update(status_part)

            if main_part:
                body = dict(main_part)
                if version:
                    body['metadata'] = dict(body.get('metadata') or {})
                    body['metadata']['resourceVersion'] = version
                if not resource.group:
                    result = self._core('patch', kind)(name=name, namespace=namespace, body=body,
                                                       _content_type=MERGE_PATCH)
                else:
                    result = self.custom_api.patch_namespaced_custom_object(
                        group=resource.group,
                        version=resource.version,
                        namespace=namespace,
                        plural=resource.plural,
                        name=name,
                        body=body
                    )
        except ApiException as e:
            raise translate_api_exception(e, what) from e

        return self._to_dict(kind, result)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        resource = KINDS[kind]
        try:
            if not resource.group:
                self._core('delete', kind)(name=name, namespace=namespace)
            else:
                self.custom_api.delete_namespaced_custom_object(
                    group=resource.group,
                    version=resource.version,
                    namespace=namespace,
                    plural=resource.plural,
                    name=name
                )
        except ApiException as e:
            raise translate_api_exception(e, f"{kind} {namespace}/{name}") from e
        logger.debug(f"Deleted {kind} {namespace}/{name}")

    def watch(self, kind: str, namespace: Optional[str] = None,
              resource_version: Optional[str] = None,
              timeout_seconds: Optional[int] = None,
              label_selector: Optional[str] = None) -> Iterator[Tuple[str, Dict]]:
        """Stream (event_type, object) pairs until the server closes the watch"""
        resource = KINDS[kind]
        kwargs = {}
        if label_selector:
            kwargs['label_selector'] = label_selector
        if resource_version:
            kwargs['resource_version'] = resource_version
        if timeout_seconds:
            kwargs['timeout_seconds'] = timeout_seconds

        if not resource.group:
            if namespace:
                list_fn = self._core('list', kind)
                kwargs['namespace'] = namespace
            else:
                list_fn = getattr(self.v1, f"list_{resource.plural[:-1]}_for_all_namespaces")
        else:
            kwargs.update(group=resource.group, version=resource.version, plural=resource.plural)
            if namespace:
                list_fn = self.custom_api.list_namespaced_custom_object
                kwargs['namespace'] = namespace
            else:
                list_fn = self.custom_api.list_cluster_custom_object

        watcher = watch.Watch()
        try:
            for event in watcher.stream(list_fn, **kwargs):
                event_type = event.get('type', '')
                raw = event.get('raw_object') or event.get('object')
                if event_type == 'ERROR':
                    code = raw.get('code') if isinstance(raw, dict) else None
                    if code == 410:
                        raise ExpiredError(f"resource version expired for {kind} watch")
                    raise StoreError(f"watch error for {kind}: {raw}")
                yield event_type, self._to_dict(kind, raw)
        except ApiException as e:
            raise translate_api_exception(e, f"{kind} watch") from e
        finally:
            watcher.stop()
