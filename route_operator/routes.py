"""
Route aggregation
Turns Route records into backend Services, a per-route child HTTPProxy and a shared
per-FQDN parent HTTPProxy that includes every live route for that hostname.
"""

import copy
import logging
from typing import Dict, List, Optional

from kubernetes import client

from route_operator.errors import NotReadyError
from route_operator.patch import create_or_patch, merge_patch, set_owner_reference, to_dict
from route_operator.reconciler import Result
from route_operator.store import ConflictError, NotFoundError, ObjectKey, StoreError, api_version_for

logger = logging.getLogger(__name__)

# Left on routes by an earlier release that cleaned up with a finalizer
LEGACY_ROUTE_FINALIZER = 'route.networking.zengarden.space'

APP_GUID_LABEL = 'apps.zengarden.space/app-guid'
PROCESS_TYPE_LABEL = 'apps.zengarden.space/process-type'
ROUTE_GUID_LABEL = 'networking.zengarden.space/route-guid'
MANAGED_BY_LABEL = 'app.kubernetes.io/managed-by'
MANAGED_BY = 'route-operator'

DEFAULT_APP_PORT = 8080
DEFAULT_PROTOCOL = 'http1'


def service_name(destination: Dict) -> str:
    return f"s-{destination['guid']}"


def build_fqdn(route: Dict, domain: Dict) -> str:
    host = route.get('spec', {}).get('host', '')
    return f"{host.lower()}.{domain.get('spec', {}).get('name', '')}"


def path_prefix(route: Dict) -> str:
    return (route.get('spec', {}).get('path') or '/').lower()


def backend_refs(destinations: List[Dict]) -> List[Dict]:
    services = []
    for destination in destinations:
        ref = {'name': service_name(destination), 'port': destination['port']}
        if destination.get('protocol') == 'http2':
            ref['protocol'] = 'h2c'
        services.append(ref)
    return services


def find_parent_proxies(store, namespace: str, fqdn: str) -> List[Dict]:
    """All HTTPProxies in namespace that claim fqdn as their virtual host"""
    return [
        proxy for proxy in store.list('HTTPProxy', namespace)
        if (proxy.get('spec', {}).get('virtualhost') or {}).get('fqdn') == fqdn
    ]


def _is_include_for(include: Dict, name: str, namespace: str) -> bool:
    return include.get('name') == name and (include.get('namespace') or namespace) == namespace


class RouteReconciler:
    """Reconciles one Route; every run recomputes everything from the current state"""

    def __init__(self, store, config):
        self.store = store
        self.config = config

    def reconcile_resource(self, route: Dict) -> Optional[Result]:
        metadata = route['metadata']
        namespace = metadata.get('namespace')
        name = metadata.get('name')

        if route.get('status') is None:
            route['status'] = {}
        status = route['status']
        status['observedGeneration'] = metadata.get('generation', 0)

        if metadata.get('deletionTimestamp'):
            logger.info(f"Route {namespace}/{name} is being deleted")
            self._finalize(route)
            return None

        logger.info(f"Reconciling Route: {namespace}/{name}")

        domain = self._get_domain(route)

        destinations = self._effective_destinations(route)
        self._create_or_patch_services(route, destinations)

        fqdn = build_fqdn(route, domain)
        logger.info(f"  FQDN: {fqdn}, destinations: {len(destinations)}")

        self._reconcile_child_proxy(route, destinations)

        previous_fqdn = status.get('fqdn')
        if previous_fqdn and previous_fqdn != fqdn:
            logger.info(f"  FQDN changed from {previous_fqdn}, leaving the old parent HTTPProxy")
            self._release_from_parent(route, previous_fqdn)
        self._include_in_parent(route, fqdn)

        result = None
        try:
            self._delete_orphaned_services(route, destinations)
        except StoreError as e:
            # orphans do not make the route unready, try again on the next pass
            logger.warning(f"Failed to delete orphaned Services for Route {namespace}/{name}: {e}")
            result = Result(requeue=True)

        status['destinations'] = destinations
        status['fqdn'] = fqdn
        status['uri'] = fqdn + (route.get('spec', {}).get('path') or '')

        logger.info(f"✓ Successfully reconciled Route: {namespace}/{name}")
        return result

    def _finalize(self, route: Dict) -> None:
        """Release the route from its parent HTTPProxy and drop the legacy finalizer"""
        metadata = route['metadata']
        self._release_from_parent(route, route['status'].get('fqdn'))

        finalizers = metadata.get('finalizers') or []
        if LEGACY_ROUTE_FINALIZER in finalizers:
            metadata['finalizers'] = [f for f in finalizers if f != LEGACY_ROUTE_FINALIZER]
            logger.info(f"  Removed legacy finalizer from Route {metadata.get('namespace')}/{metadata.get('name')}")

    def _get_domain(self, route: Dict) -> Dict:
        """Fetch the referenced Domain, NotReady while it is missing"""
        namespace = route['metadata'].get('namespace')
        domain_ref = route.get('spec', {}).get('domainRef') or {}
        domain_name = domain_ref.get('name')
        domain_namespace = domain_ref.get('namespace') or namespace

        if not domain_name:
            raise NotReadyError(reason='InvalidDomainRef', message='route has no domain reference',
                                requeue_after=self.config.domain_requeue_seconds)

        try:
            return self.store.get('Domain', domain_namespace, domain_name)
        except NotFoundError as e:
            raise NotReadyError(reason='InvalidDomainRef', cause=e,
                                requeue_after=self.config.domain_requeue_seconds) from e

    def _current_droplet(self, namespace: str, app_name: str) -> Optional[Dict]:
        """Droplet of the app's current build, or None while there is none yet"""
        if not app_name:
            return None

        try:
            app = self.store.get('App', namespace, app_name)
        except NotFoundError:
            return None

        build_name = (app.get('spec', {}).get('currentDropletRef') or {}).get('name')
        if not build_name:
            return None

        try:
            build = self.store.get('Build', namespace, build_name)
        except NotFoundError:
            return None

        return (build.get('status') or {}).get('droplet')

    def _effective_destinations(self, route: Dict) -> List[Dict]:
        """Destinations with port and protocol defaulted, minus those whose app has no droplet yet"""
        namespace = route['metadata'].get('namespace')
        effective = []

        for destination in route.get('spec', {}).get('destinations') or []:
            effective_destination = copy.deepcopy(destination)
            if not effective_destination.get('protocol'):
                effective_destination['protocol'] = DEFAULT_PROTOCOL

            if effective_destination.get('port') is None:
                app_name = (destination.get('appRef') or {}).get('name', '')
                droplet = self._current_droplet(namespace, app_name)
                if droplet is None:
                    logger.info(f"  No droplet yet for app {namespace}/{app_name}, skipping destination {destination.get('guid')}")
                    continue

                ports = droplet.get('ports') or []
                effective_destination['port'] = ports[0] if ports else DEFAULT_APP_PORT

            effective.append(effective_destination)

        return effective

    def _create_or_patch_services(self, route: Dict, destinations: List[Dict]) -> None:
        """Ensure one Service per destination, owned by the route"""
        namespace = route['metadata'].get('namespace')
        route_name = route['metadata'].get('name')

        for destination in destinations:
            name = service_name(destination)
            app_name = (destination.get('appRef') or {}).get('name', '')

            def mutate(service, destination=destination, app_name=app_name):
                metadata = service.setdefault('metadata', {})
                labels = dict(metadata.get('labels') or {})
                labels.update({
                    APP_GUID_LABEL: app_name,
                    ROUTE_GUID_LABEL: route_name,
                    MANAGED_BY_LABEL: MANAGED_BY,
                })
                metadata['labels'] = labels
                set_owner_reference(service, route)

                spec = service.setdefault('spec', {})
                spec['selector'] = {
                    APP_GUID_LABEL: app_name,
                    PROCESS_TYPE_LABEL: destination.get('processType', ''),
                }
                spec['ports'] = [to_dict(client.V1ServicePort(
                    port=destination['port'],
                    protocol='TCP',
                    target_port=destination['port']
                ))]

            try:
                operation = create_or_patch(self.store, 'Service', namespace, name, mutate)
            except StoreError as e:
                logger.info(f"  Failed to create/patch Service {namespace}/{name}: {e}")
                raise NotReadyError(
                    reason='CreatePatchServices',
                    message=f"service reconciliation failed for Route/{route_name} destinations",
                    cause=e
                ) from e

            logger.debug(f"  Service {namespace}/{name} {operation}")

    def _reconcile_child_proxy(self, route: Dict, destinations: List[Dict]) -> None:
        """Ensure the route-owned HTTPProxy that carries the path and backends"""
        namespace = route['metadata'].get('namespace')
        name = route['metadata'].get('name')

        try:
            if not destinations:
                # a route without live destinations is not exposed
                try:
                    self.store.delete('HTTPProxy', namespace, name)
                    logger.info(f"  Deleted child HTTPProxy {namespace}/{name}, no live destinations")
                except NotFoundError:
                    pass
                return

            def mutate(proxy):
                metadata = proxy.setdefault('metadata', {})
                labels = dict(metadata.get('labels') or {})
                labels.update({ROUTE_GUID_LABEL: name, MANAGED_BY_LABEL: MANAGED_BY})
                metadata['labels'] = labels
                set_owner_reference(proxy, route)
                proxy['spec'] = {
                    'routes': [{
                        'conditions': [{'prefix': path_prefix(route)}],
                        'services': backend_refs(destinations),
                        'enableWebsockets': True,
                    }]
                }

            operation = create_or_patch(self.store, 'HTTPProxy', namespace, name, mutate)
            logger.info(f"  Child HTTPProxy {namespace}/{name} {operation}")
        except ConflictError:
            raise
        except StoreError as e:
            raise NotReadyError(reason='ReconcileChildProxy', cause=e) from e

    def _virtualhost(self, fqdn: str) -> Dict:
        """Virtual host block for a parent HTTPProxy"""
        virtualhost = {'fqdn': fqdn}
        if self.config.workloads_tls_secret:
            virtualhost['tls'] = {'secretName': self.config.workloads_tls_secret}
        return virtualhost

    def _find_parent_proxy(self, namespace: str, fqdn: str) -> Optional[Dict]:
        """The single HTTPProxy serving fqdn, NotReady when several claim it"""
        parents = find_parent_proxies(self.store, namespace, fqdn)
        if len(parents) > 1:
            names = ', '.join(sorted(p['metadata']['name'] for p in parents))
            raise NotReadyError(
                reason='DuplicateFQDNProxy',
                message=f"found multiple HTTPProxy with FQDN {fqdn} in namespace {namespace}: {names}",
                no_requeue=True
            )
        return parents[0] if parents else None

    def _include_in_parent(self, route: Dict, fqdn: str) -> None:
        """Add the route to the parent HTTPProxy for fqdn, creating the parent if needed"""
        namespace = route['metadata'].get('namespace')
        name = route['metadata'].get('name')
        include = {'name': name, 'namespace': namespace}

        try:
            parent = self._find_parent_proxy(namespace, fqdn)
            if parent is None:
                self._create_parent(namespace, fqdn, include)
                return

            desired = copy.deepcopy(parent)
            spec = desired.setdefault('spec', {})
            spec['virtualhost'] = self._virtualhost(fqdn)
            includes = list(spec.get('includes') or [])
            if not any(_is_include_for(i, name, namespace) for i in includes):
                includes.append(include)
                logger.info(f"  Adding Route {name} to parent HTTPProxy {namespace}/{parent['metadata']['name']}")
            spec['includes'] = includes

            diff = merge_patch(parent, desired)
            if diff:
                self.store.patch('HTTPProxy', namespace, parent['metadata']['name'], diff,
                                 expected_version=parent['metadata'].get('resourceVersion'))
        except ConflictError:
            raise
        except StoreError as e:
            raise NotReadyError(reason='ReconcileParentProxy', cause=e) from e

    def _create_parent(self, namespace: str, fqdn: str, include: Dict) -> None:
        """Create the parent HTTPProxy for fqdn with include as its only entry"""
        proxy = {
            'apiVersion': api_version_for('HTTPProxy'),
            'kind': 'HTTPProxy',
            'metadata': {
                'name': fqdn,
                'namespace': namespace,
                'labels': {MANAGED_BY_LABEL: MANAGED_BY},
            },
            'spec': {
                'virtualhost': self._virtualhost(fqdn),
                'includes': [include],
            },
        }

        try:
            self.store.create('HTTPProxy', proxy)
        except ConflictError:
            # another route won the race, unless the name is taken by something else
            try:
                existing = self.store.get('HTTPProxy', namespace, fqdn)
            except NotFoundError:
                raise ConflictError(f"parent HTTPProxy {namespace}/{fqdn} vanished during creation")
            claimed = (existing.get('spec', {}).get('virtualhost') or {}).get('fqdn')
            if claimed != fqdn:
                raise NotReadyError(
                    reason='DuplicateFQDNProxy',
                    message=f"HTTPProxy {namespace}/{fqdn} exists but serves {claimed!r}",
                    no_requeue=True
                )
            raise

        logger.info(f"  Created parent HTTPProxy {namespace}/{fqdn}")

    def _release_from_parent(self, route: Dict, fqdn: Optional[str]) -> None:
        """Drop this route's include; the parent itself stays even when empty"""
        if not fqdn:
            return

        namespace = route['metadata'].get('namespace')
        name = route['metadata'].get('name')

        for parent in find_parent_proxies(self.store, namespace, fqdn):
            includes = parent.get('spec', {}).get('includes') or []
            retained = [i for i in includes if not _is_include_for(i, name, namespace)]
            if len(retained) == len(includes):
                continue

            self.store.patch('HTTPProxy', namespace, parent['metadata']['name'],
                             {'spec': {'includes': retained}},
                             expected_version=parent['metadata'].get('resourceVersion'))
            logger.info(f"  Removed Route {name} from parent HTTPProxy {namespace}/{parent['metadata']['name']} "
                        f"({len(retained)} include(s) left)")

    def _delete_orphaned_services(self, route: Dict, destinations: List[Dict]) -> None:
        """Delete route-labelled Services no destination maps to anymore"""
        namespace = route['metadata'].get('namespace')
        name = route['metadata'].get('name')
        wanted = {service_name(d) for d in destinations}

        services = self.store.list('Service', namespace, label_selector=f"{ROUTE_GUID_LABEL}={name}")
        for service in services:
            orphan = service['metadata']['name']
            if orphan in wanted:
                continue
            try:
                self.store.delete('Service', namespace, orphan)
                logger.info(f"  Deleted orphaned Service {namespace}/{orphan}")
            except NotFoundError:
                pass


class ParentProxyPruner:
    """
    Removes includes of routes that are gone or going from the parent HTTPProxy of
    one FQDN. Keyed by (HTTPProxy, namespace, fqdn). Never deletes the parent.
    """

    def __init__(self, store):
        self.store = store

    def _route_is_live(self, namespace: str, include: Dict) -> bool:
        """Whether include names a route that still exists and is not being deleted"""
        if (include.get('namespace') or namespace) != namespace:
            return True
        try:
            route = self.store.get('Route', namespace, include.get('name', ''))
        except NotFoundError:
            return False
        return not route.get('metadata', {}).get('deletionTimestamp')

    def reconcile(self, key: ObjectKey) -> Result:
        """Drop includes whose route is gone from the parent HTTPProxy named by key"""
        namespace, fqdn = key.namespace, key.name

        for parent in find_parent_proxies(self.store, namespace, fqdn):
            parent_name = parent['metadata']['name']
            includes = parent.get('spec', {}).get('includes') or []
            retained = [i for i in includes if self._route_is_live(namespace, i)]
            if len(retained) == len(includes):
                continue

            self.store.patch('HTTPProxy', namespace, parent_name,
                             {'spec': {'includes': retained}},
                             expected_version=parent['metadata'].get('resourceVersion'))
            logger.info(f"Pruned {len(includes) - len(retained)} include(s) from parent HTTPProxy "
                        f"{namespace}/{parent_name}")

        return Result()
