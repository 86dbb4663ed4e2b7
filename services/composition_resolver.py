"""
Composition Resolver
Builds the bill-of-materials tree of a minted batch, attributes component carbon
and collects the deduplicated set of production locations.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

from flask import current_app, has_app_context

from config import RESOLVER_MAX_WORKERS
from models import db
from models.plant import Plant
from models.product import ProductBatch, ProductTemplate
from services.exceptions import CycleDetected, DataIntegrityError, NotFound, OperationCancelled
from utils.carbon_utils import component_carbon_share

logger = logging.getLogger(__name__)


def load_token_record(token_id):
    """Snapshot of the batch, template and plant behind a token id"""
    batch = ProductBatch.query.filter_by(token_id=token_id).first()
    if not batch:
        raise NotFound(f"No batch recorded for token {token_id}")
    template = db.session.get(ProductTemplate, batch.template_id)
    if not template:
        raise DataIntegrityError(f"Product template {batch.template_id} not found for token {token_id}")
    plant = db.session.get(Plant, batch.plant_id)
    if not plant:
        raise DataIntegrityError(f"Plant {batch.plant_id} not found for token {token_id}")
    return {'batch': batch.to_dict(), 'template': template.to_dict(), 'plant': plant.to_dict()}


class CompositionNode:
    """One batch in the composition tree"""

    def __init__(self, token_id, record, depth, path, declared_quantity=None, carbon_share=None):
        self.token_id = token_id
        self.batch = record['batch']
        self.template = record['template']
        self.plant = record['plant']
        self.depth = depth
        self.path = path
        self.declared_quantity = declared_quantity
        self.carbon_share = carbon_share
        self.children = []
        self.missing = []

    @property
    def expected_components(self):
        return len(self.batch.get('components') or [])

    @property
    def resolved_components(self):
        return len(self.children)

    @property
    def coordinates(self):
        coords = (self.plant.get('location') or {}).get('coordinates') or {}
        if coords.get('latitude') is None or coords.get('longitude') is None:
            return None
        return {'lat': coords['latitude'], 'lng': coords['longitude']}

    def to_dict(self):
        return {
            'token_id': self.token_id,
            'depth': self.depth,
            'batch': self.batch,
            'product': self.template,
            'plant': self.plant,
            'declared_quantity': self.declared_quantity,
            'carbon_share': self.carbon_share,
            'expected_components': self.expected_components,
            'resolved_components': self.resolved_components,
            'missing_components': self.missing,
            'components': [child.to_dict() for child in self.children],
        }


class CompositionResult:
    def __init__(self, root, locations):
        self.root = root
        self.locations = locations

    def _nodes(self):
        stack = [self.root]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(node.children)

    @property
    def expected_components(self):
        return sum(node.expected_components for node in self._nodes())

    @property
    def resolved_components(self):
        return sum(node.resolved_components for node in self._nodes())

    @property
    def is_complete(self):
        return self.expected_components == self.resolved_components

    def to_dict(self):
        tree = self.root.to_dict()
        return {
            'token_id': self.root.token_id,
            'batch': tree['batch'],
            'product': tree['product'],
            'plant': tree['plant'],
            'components': tree['components'],
            'missing_components': tree['missing_components'],
            'supply_chain_locations': self.locations,
            'expected_components': self.expected_components,
            'resolved_components': self.resolved_components,
            'is_complete': self.is_complete,
        }


class CompositionResolver:
    """Resolves composition trees level by level, fetching siblings concurrently"""

    def __init__(self, app=None, max_workers=RESOLVER_MAX_WORKERS, loader=None):
        self.app = app
        self.max_workers = max(1, int(max_workers))
        self.loader = loader or load_token_record

    def resolve(self, token_id, timeout=None, cancel_event=None):
        deadline = time.monotonic() + timeout if timeout else None
        app = self.app or (current_app._get_current_object() if has_app_context() else None)

        try:
            root_record = self.loader(token_id)
        except DataIntegrityError as e:
            logger.error(f"Data integrity error resolving token {token_id}: {e}")
            raise
        except NotFound:
            logger.info(f"Token {token_id} has no recorded batch")
            raise

        root = CompositionNode(token_id, root_record, depth=0, path=(token_id,))
        # Records loaded during this call, keyed by token id: (record, error)
        cache = {token_id: (root_record, None)}
        frontier = [root]

        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='resolver')
        try:
            while frontier:
                self._check_cancelled(deadline, cancel_event)

                pending = []
                for node in frontier:
                    for entry in node.batch.get('components') or []:
                        component_id = entry['token_id']
                        if component_id in node.path:
                            raise CycleDetected(component_id, node.path)
                        pending.append((node, entry))

                to_fetch = []
                for _, entry in pending:
                    if entry['token_id'] not in cache and entry['token_id'] not in to_fetch:
                        to_fetch.append(entry['token_id'])
                futures = {cid: pool.submit(self._load_in_context, app, cid) for cid in to_fetch}
                for cid, future in futures.items():
                    cache[cid] = self._outcome(cid, future, deadline, cancel_event)

                next_frontier = []
                for node, entry in pending:
                    component_id = entry['token_id']
                    record, error = cache[component_id]
                    if error is not None:
                        node.missing.append({'token_id': component_id, 'reason': str(error)})
                        continue
                    child = CompositionNode(
                        component_id,
                        record,
                        depth=node.depth + 1,
                        path=node.path + (component_id,),
                        declared_quantity=entry['quantity'],
                        carbon_share=component_carbon_share(
                            record['batch']['carbon_footprint'],
                            record['batch']['quantity'],
                            entry['quantity'],
                        ),
                    )
                    node.children.append(child)
                    next_frontier.append(child)
                frontier = next_frontier
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        result = CompositionResult(root, self.collect_locations(root))
        if not result.is_complete:
            logger.warning(f"Token {token_id} resolved partially: "
                           f"{result.resolved_components} of {result.expected_components} components")
        return result

    def _load_in_context(self, app, token_id):
        if app is None:
            return self.loader(token_id)
        with app.app_context():
            return self.loader(token_id)

    def _outcome(self, token_id, future, deadline, cancel_event):
        remaining = None
        if deadline is not None:
            remaining = max(0.0, deadline - time.monotonic())
        try:
            outcome = future.result(timeout=remaining), None
        except FutureTimeout:
            raise OperationCancelled(f"Resolution timed out while loading token {token_id}")
        except (NotFound, DataIntegrityError) as e:
            level = logging.ERROR if isinstance(e, DataIntegrityError) else logging.WARNING
            logger.log(level, f"Skipping component token {token_id}: {e}")
            outcome = None, e
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled("Resolution cancelled")
        return outcome

    @staticmethod
    def _check_cancelled(deadline, cancel_event):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled("Resolution cancelled")
        if deadline is not None and time.monotonic() > deadline:
            raise OperationCancelled("Resolution timed out")

    @staticmethod
    def collect_locations(root):
        """Depth-first pre-order walk; first occurrence of each (lat, lng, name) wins"""
        locations = []
        seen = set()
        stack = [(root, None)]
        while stack:
            node, parent = stack.pop()
            coords = node.coordinates
            if coords is not None:
                name = f"{node.plant.get('name')} - {node.template.get('name')}"
                key = (coords['lat'], coords['lng'], name)
                if key not in seen:
                    seen.add(key)
                    is_raw = node.template.get('is_raw_material')
                    if parent is None:
                        location = {
                            'lat': coords['lat'],
                            'lng': coords['lng'],
                            'name': name,
                            'type': 'Raw Material' if is_raw else 'Final Product',
                            'carbon_footprint': node.batch['carbon_footprint'],
                            'quantity': node.batch['quantity'],
                        }
                    else:
                        location = {
                            'lat': coords['lat'],
                            'lng': coords['lng'],
                            'name': name,
                            'type': 'Raw Material' if is_raw else 'Component',
                            'carbon_footprint': node.carbon_share,
                            'quantity': node.declared_quantity,
                        }
                        if parent.coordinates is not None:
                            location['parent_location'] = parent.coordinates
                    locations.append(location)
            for child in reversed(node.children):
                stack.append((child, node))
        return locations
