"""
Informer cache with secondary indexes
Keeps the last seen object per key and reverse lookups from referenced entities to keys.
"""

import threading
from typing import Callable, Dict, List, Optional, Set

from route_operator.store import ObjectKey, key_for

INDEX_ROUTE_DESTINATION_APP_NAME = 'destinationAppName'
INDEX_ROUTE_DOMAIN_QUALIFIED_NAME = 'domainQualifiedName'


def route_destination_app_name_index(route: Dict) -> List[str]:
    namespace = route.get('metadata', {}).get('namespace', '')
    names = set()
    for destination in route.get('spec', {}).get('destinations') or []:
        app_name = (destination.get('appRef') or {}).get('name')
        if app_name:
            names.add(f"{namespace}/{app_name}")
    return sorted(names)


def route_domain_qualified_name_index(route: Dict) -> List[str]:
    domain_ref = route.get('spec', {}).get('domainRef') or {}
    if not domain_ref.get('name'):
        return []
    # an unqualified domain ref resolves in the route's own namespace
    namespace = domain_ref.get('namespace') or route.get('metadata', {}).get('namespace', '')
    return [f"{namespace}.{domain_ref['name']}"]


def domain_qualified_name(domain: Dict) -> str:
    metadata = domain.get('metadata', {})
    return f"{metadata.get('namespace', '')}.{metadata.get('name', '')}"


class Indexer:
    """Thread-safe cache of objects of one kind plus named index functions"""

    def __init__(self, kind: str, indexers: Optional[Dict[str, Callable[[Dict], List[str]]]] = None):
        self.kind = kind
        self._lock = threading.Lock()
        self._objects: Dict[ObjectKey, Dict] = {}
        self._index_funcs = dict(indexers or {})
        self._indices: Dict[str, Dict[str, Set[ObjectKey]]] = {name: {} for name in self._index_funcs}

    def _key(self, obj: Dict) -> ObjectKey:
        key = key_for(obj)
        return ObjectKey(self.kind, key.namespace, key.name)

    def _unindex(self, key: ObjectKey, obj: Dict) -> None:
        for name, func in self._index_funcs.items():
            index = self._indices[name]
            for value in func(obj):
                keys = index.get(value)
                if keys is None:
                    continue
                keys.discard(key)
                if not keys:
                    del index[value]

    def upsert(self, obj: Dict) -> ObjectKey:
        key = self._key(obj)
        with self._lock:
            old = self._objects.get(key)
            if old is not None:
                self._unindex(key, old)
            self._objects[key] = obj
            for name, func in self._index_funcs.items():
                for value in func(obj):
                    self._indices[name].setdefault(value, set()).add(key)
        return key

    def remove(self, obj: Dict) -> ObjectKey:
        key = self._key(obj)
        with self._lock:
            old = self._objects.pop(key, None)
            if old is not None:
                self._unindex(key, old)
        return key

    def replace(self, objs: List[Dict]) -> None:
        """Swap in a full listing, as after a (re-)list"""
        with self._lock:
            self._objects = {}
            self._indices = {name: {} for name in self._index_funcs}
        for obj in objs:
            self.upsert(obj)

    def get(self, key: ObjectKey) -> Optional[Dict]:
        with self._lock:
            return self._objects.get(key)

    def keys(self) -> List[ObjectKey]:
        with self._lock:
            return list(self._objects)

    def lookup(self, index_name: str, value: str) -> List[ObjectKey]:
        with self._lock:
            if index_name not in self._indices:
                raise KeyError(f"no index named {index_name!r} on {self.kind}")
            return sorted(self._indices[index_name].get(value, ()))
