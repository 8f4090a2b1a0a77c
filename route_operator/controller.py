"""
Controller
List-then-watch informers feed keys into the work queue; a worker pool drains it
through the per-kind reconcilers.
"""

import logging
import random
import threading
from typing import Callable, Dict, List, Optional

from route_operator.index import (
    INDEX_ROUTE_DESTINATION_APP_NAME,
    INDEX_ROUTE_DOMAIN_QUALIFIED_NAME,
    Indexer,
    domain_qualified_name,
    route_destination_app_name_index,
    route_domain_qualified_name_index,
)
from route_operator.patch import controller_owner
from route_operator.reconciler import PatchingReconciler
from route_operator.routes import MANAGED_BY, MANAGED_BY_LABEL, ParentProxyPruner, RouteReconciler
from route_operator.store import ConflictError, ExpiredError, ObjectKey, StoreError
from route_operator.workqueue import WorkQueue

logger = logging.getLogger(__name__)

MAX_WATCH_BACKOFF_SECONDS = 30


class Informer:
    """
    Keeps an Indexer in sync with one kind and calls handler(event_type, obj) for
    every change. Re-lists when the watch resourceVersion expires.
    """

    def __init__(self, store, kind: str, indexer: Indexer, handler: Callable[[str, Dict], None],
                 stop_event: threading.Event, namespace: str = '', label_selector: Optional[str] = None,
                 watch_timeout_seconds: int = 300):
        self.store = store
        self.kind = kind
        self.indexer = indexer
        self.handler = handler
        self.stop_event = stop_event
        self.namespace = namespace or None
        self.label_selector = label_selector
        self.watch_timeout_seconds = watch_timeout_seconds
        self.synced = threading.Event()

    def _dispatch(self, event_type: str, obj: Dict) -> None:
        try:
            self.handler(event_type, obj)
        except Exception as e:
            logger.error(f"{self.kind} event handler failed: {e}", exc_info=True)

    def list_and_replace(self) -> Optional[str]:
        """Full re-list; emits DELETED for cached objects that are gone"""
        items, resource_version = self.store.list_with_version(self.kind, self.namespace, self.label_selector)
        previous = {key: self.indexer.get(key) for key in self.indexer.keys()}
        self.indexer.replace(items)

        current = set(self.indexer.keys())
        for key, obj in previous.items():
            if key not in current and obj is not None:
                self._dispatch('DELETED', obj)
        for obj in items:
            self._dispatch('ADDED', obj)

        self.synced.set()
        logger.info(f"Listed {len(items)} {self.kind} object(s) at resourceVersion {resource_version}")
        return resource_version

    def run(self) -> None:
        resource_version = None
        backoff_seconds = 1

        while not self.stop_event.is_set():
            try:
                if resource_version is None:
                    resource_version = self.list_and_replace()

                for event_type, obj in self.store.watch(self.kind, self.namespace,
                                                        resource_version=resource_version,
                                                        timeout_seconds=self.watch_timeout_seconds,
                                                        label_selector=self.label_selector):
                    if self.stop_event.is_set():
                        break

                    version = obj.get('metadata', {}).get('resourceVersion')
                    if version:
                        resource_version = version

                    if event_type == 'BOOKMARK':
                        continue
                    if event_type == 'DELETED':
                        self.indexer.remove(obj)
                    else:
                        self.indexer.upsert(obj)
                    self._dispatch(event_type, obj)

                backoff_seconds = 1
            except ExpiredError:
                logger.warning(f"{self.kind} watch resource version expired, re-listing")
                resource_version = None
            except StoreError as e:
                logger.error(f"{self.kind} watch failed: {e}")
                self.stop_event.wait(backoff_seconds * (0.5 + random.random()))
                backoff_seconds = min(backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)
            except Exception as e:
                logger.error(f"Unexpected {self.kind} watch error: {e}", exc_info=True)
                self.stop_event.wait(backoff_seconds * (0.5 + random.random()))
                backoff_seconds = min(backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)

        logger.info(f"{self.kind} informer stopped")


class Controller:
    """Wires informers, the work queue and the reconcilers together"""

    def __init__(self, store, config):
        self.store = store
        self.config = config
        self.stop_event = threading.Event()
        self.queue = WorkQueue(base_delay=config.backoff_base_seconds, max_delay=config.backoff_max_seconds)

        self.routes = Indexer('Route', {
            INDEX_ROUTE_DESTINATION_APP_NAME: route_destination_app_name_index,
            INDEX_ROUTE_DOMAIN_QUALIFIED_NAME: route_domain_qualified_name_index,
        })

        self.handlers = {
            'Route': PatchingReconciler(store, 'Route', RouteReconciler(store, config)),
            'HTTPProxy': ParentProxyPruner(store),
        }

        self.proxies = Indexer('HTTPProxy')

        managed = f"{MANAGED_BY_LABEL}={MANAGED_BY}"
        self.informers = [
            self._informer('Route', self.routes, self.on_route_event),
            self._informer('App', Indexer('App'), self.on_app_event),
            self._informer('Build', Indexer('Build'), self.on_build_event),
            self._informer('Domain', Indexer('Domain'), self.on_domain_event),
            self._informer('Service', Indexer('Service'), self.on_owned_event, label_selector=managed),
            self._informer('HTTPProxy', self.proxies, self.on_owned_event, label_selector=managed),
        ]
        self._threads: List[threading.Thread] = []

    def _informer(self, kind, indexer, handler, label_selector=None) -> Informer:
        return Informer(
            self.store, kind, indexer, handler, self.stop_event,
            namespace=self.config.watch_namespace,
            label_selector=label_selector,
            watch_timeout_seconds=self.config.watch_timeout_seconds
        )

    # Event mapping

    def on_route_event(self, event_type: str, route: Dict) -> None:
        metadata = route.get('metadata', {})
        namespace = metadata.get('namespace', '')
        self.queue.add(ObjectKey('Route', namespace, metadata.get('name', '')))

        if event_type == 'DELETED':
            fqdn = (route.get('status') or {}).get('fqdn')
            if fqdn:
                self.queue.add(ObjectKey('HTTPProxy', namespace, fqdn))

    def _enqueue_routes_for_app(self, namespace: str, app_name: str) -> None:
        keys = self.routes.lookup(INDEX_ROUTE_DESTINATION_APP_NAME, f"{namespace}/{app_name}")
        for key in keys:
            self.queue.add(key)
        if keys:
            logger.debug(f"App {namespace}/{app_name} changed, enqueued {len(keys)} route(s)")

    def on_app_event(self, event_type: str, app: Dict) -> None:
        metadata = app.get('metadata', {})
        self._enqueue_routes_for_app(metadata.get('namespace', ''), metadata.get('name', ''))

    def on_build_event(self, event_type: str, build: Dict) -> None:
        app_name = (build.get('spec', {}).get('appRef') or {}).get('name')
        if app_name:
            self._enqueue_routes_for_app(build.get('metadata', {}).get('namespace', ''), app_name)

    def on_domain_event(self, event_type: str, domain: Dict) -> None:
        for key in self.routes.lookup(INDEX_ROUTE_DOMAIN_QUALIFIED_NAME, domain_qualified_name(domain)):
            self.queue.add(key)

    def on_owned_event(self, event_type: str, obj: Dict) -> None:
        namespace = obj.get('metadata', {}).get('namespace', '')
        owner = controller_owner(obj)
        if owner and owner.get('kind') == 'Route':
            self.queue.add(ObjectKey('Route', namespace, owner.get('name', '')))
            return

        parent_key = self._parent_key(obj)
        if parent_key is not None and event_type != 'DELETED':
            self.queue.add(parent_key)

    @staticmethod
    def _parent_key(obj: Dict) -> Optional[ObjectKey]:
        """Pruner key for a shared parent HTTPProxy, None for anything else"""
        if obj.get('kind') != 'HTTPProxy' or controller_owner(obj):
            return None
        fqdn = (obj.get('spec', {}).get('virtualhost') or {}).get('fqdn')
        if not fqdn:
            return None
        return ObjectKey('HTTPProxy', obj.get('metadata', {}).get('namespace', ''), fqdn)

    # Processing

    def process(self, key: ObjectKey) -> None:
        handler = self.handlers.get(key.kind)
        if handler is None:
            logger.warning(f"No reconciler for {key.kind}, dropping {key.namespace}/{key.name}")
            self.queue.forget(key)
            return

        try:
            result = handler.reconcile(key)
        except ConflictError as e:
            logger.info(f"Conflict on {key.kind} {key.namespace}/{key.name}, retrying: {e}")
            self.queue.add(key)
            return
        except Exception as e:
            attempt = self.queue.num_requeues(key) + 1
            logger.warning(f"Reconcile of {key.kind} {key.namespace}/{key.name} failed "
                           f"(attempt {attempt}), backing off: {e}")
            self.queue.add_rate_limited(key)
            return

        if result.requeue_after:
            self.queue.forget(key)
            self.queue.add_after(key, result.requeue_after)
        elif result.requeue:
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)

    def _worker(self) -> None:
        while True:
            key = self.queue.get()
            if key is None:
                return
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    def resync(self) -> None:
        """Re-enqueue every cached route and every shared parent HTTPProxy"""
        routes = self.routes.keys()
        for key in routes:
            self.queue.add(key)

        parents = 0
        for key in self.proxies.keys():
            parent_key = self._parent_key(self.proxies.get(key) or {})
            if parent_key is not None:
                self.queue.add(parent_key)
                parents += 1

        logger.info(f"Periodic resync enqueued {len(routes)} route(s) and {parents} parent HTTPProxy(s)")

    def _resync(self) -> None:
        while not self.stop_event.wait(self.config.resync_interval_seconds):
            self.resync()

    def _start_thread(self, target, name: str) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def start(self) -> None:
        for informer in self.informers:
            self._start_thread(informer.run, f"informer-{informer.kind}")
        for i in range(self.config.max_concurrent_reconciles):
            self._start_thread(self._worker, f"worker-{i}")
        self._start_thread(self._resync, 'resync')
        logger.info(f"Controller started with {self.config.max_concurrent_reconciles} worker(s)")

    def stop(self, timeout: float = 10) -> None:
        self.stop_event.set()
        self.queue.shut_down()
        for thread in self._threads:
            if thread.name.startswith('worker-'):
                thread.join(timeout)
        logger.info("Controller stopped")
