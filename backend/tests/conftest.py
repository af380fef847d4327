import copy
import os

import pytest

# Configure the service before server.py is imported by any test module.
os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "sequence_audit_test")
os.environ["AUDIT_BATCH_DELAY"] = "0"

# Keep external integrations quiet during tests
for _name in ("OPENAI_API_KEY", "RECHARGE_API_KEY", "SHOPIFY_SHOP", "SHOPIFY_ACCESS_TOKEN"):
    os.environ.pop(_name, None)

from synthetic import generate_synthetic  # noqa: E402


class MemoryStore:
    """In-memory stand-in for store.Store with the same coroutine interface."""

    def __init__(self):
        self.variations = {}
        self.aliases = {}
        self.patterns = {}
        self.suggestions = {}
        self.subscribers = {}
        self.states = {}
        self.order_history = {}
        self.audit_logs = {}
        self.unmapped = {}
        self.runs = {}
        self.run_snapshots = []

    @staticmethod
    def _copy(docs):
        return copy.deepcopy(docs)

    # catalog
    async def list_variations(self, merchant_id, variation_type=None):
        rows = [v for v in self.variations.values() if v['merchant_id'] == merchant_id
                and (not variation_type or v['variation_type'] == variation_type)]
        return self._copy(sorted(rows, key=lambda v: (-v['order_count'], v['key'])))

    async def save_variations(self, variations):
        for v in variations:
            self.variations[v['variation_id']] = copy.deepcopy(v)

    async def list_aliases(self, merchant_id):
        rows = [a for a in self.aliases.values() if a['merchant_id'] == merchant_id]
        return self._copy(sorted(rows, key=lambda a: a['sequence']))

    async def count_aliases(self, merchant_id):
        return sum(1 for a in self.aliases.values() if a['merchant_id'] == merchant_id)

    async def save_alias(self, alias):
        doc = copy.deepcopy(alias)
        for existing in list(self.aliases.values()):
            if existing['merchant_id'] == doc['merchant_id'] and existing['sku'] == doc['sku']:
                doc['alias_id'] = existing['alias_id']
        self.aliases[doc['alias_id']] = doc
        return copy.deepcopy(doc)

    async def delete_alias(self, alias_id):
        self.aliases.pop(alias_id, None)

    async def list_patterns(self, merchant_id):
        return self._copy([p for p in self.patterns.values() if p['merchant_id'] == merchant_id])

    async def save_pattern(self, pattern):
        self.patterns[pattern['pattern_id']] = copy.deepcopy(pattern)

    async def delete_pattern(self, pattern_id):
        return 1 if self.patterns.pop(pattern_id, None) else 0

    async def list_suggestions(self, merchant_id, status=None):
        return self._copy([s for s in self.suggestions.values() if s['merchant_id'] == merchant_id
                           and (not status or s['status'] == status)])

    async def replace_pending_suggestions(self, merchant_id, entries):
        for key, s in list(self.suggestions.items()):
            if s['merchant_id'] == merchant_id and s['status'] == 'pending':
                del self.suggestions[key]
        await self.save_suggestions(entries)

    async def save_suggestions(self, entries):
        for e in entries:
            self.suggestions[e['suggestion_id']] = copy.deepcopy(e)

    # subscribers
    async def list_subscribers(self, merchant_id, migration_status=None):
        rows = [s for s in self.subscribers.values() if s['merchant_id'] == merchant_id
                and (not migration_status or s['migration_status'] == migration_status)]
        return self._copy(sorted(rows, key=lambda s: s['subscriber_id']))

    async def pending_subscriber_ids(self, merchant_id):
        return [s['subscriber_id'] for s in await self.list_subscribers(merchant_id, 'pending')]

    async def get_subscriber(self, subscriber_id):
        return copy.deepcopy(self.subscribers.get(subscriber_id))

    async def save_subscriber(self, subscriber):
        self.subscribers[subscriber['subscriber_id']] = copy.deepcopy(subscriber)

    async def set_subscriber_status(self, subscriber_id, migration_status):
        if subscriber_id in self.subscribers:
            self.subscribers[subscriber_id]['migration_status'] = migration_status

    async def get_state(self, subscriber_id):
        return copy.deepcopy(self.states.get(subscriber_id))

    async def save_state(self, state):
        self.states[state['subscriber_id']] = copy.deepcopy(state)

    async def update_state(self, subscriber_id, fields):
        if subscriber_id in self.states:
            self.states[subscriber_id].update(copy.deepcopy(fields))

    async def commit_system_state(self, state, previous=None):
        current = self.states.get(state['subscriber_id'])
        if previous is None:
            if current is not None:
                return False
        elif current is None or current.get('manually_adjusted') \
                or current['current_position'] >= state['current_position']:
            return False
        self.states[state['subscriber_id']] = copy.deepcopy(state)
        return True

    async def load_order_history(self, merchant_id):
        return copy.deepcopy(self.order_history.get(merchant_id, {}))

    async def save_order_history(self, merchant_id, orders_by_customer):
        self.order_history.setdefault(merchant_id, {}).update(copy.deepcopy(orders_by_customer))

    # audit logs
    async def insert_audit_log(self, entry):
        self.audit_logs[entry['audit_log_id']] = copy.deepcopy(entry)

    async def get_audit_log(self, audit_log_id):
        return copy.deepcopy(self.audit_logs.get(audit_log_id))

    async def transition_audit_log(self, audit_log_id, from_status, fields):
        entry = self.audit_logs.get(audit_log_id)
        if entry is None or entry['status'] != from_status:
            return False
        entry.update(copy.deepcopy(fields))
        return True

    async def list_audit_logs(self, merchant_id, status=None, run_id=None, limit=0):
        rows = [e for e in self.audit_logs.values() if e['merchant_id'] == merchant_id
                and (not status or e['status'] == status) and (not run_id or e['run_id'] == run_id)]
        rows = sorted(rows, key=lambda e: e['created_at'])
        return self._copy(rows[:limit] if limit else rows)

    async def save_unmapped(self, items):
        for item in items:
            self.unmapped[(item['merchant_id'], item['order_id'], item['product_name'])] = copy.deepcopy(item)

    async def list_unmapped(self, merchant_id, resolved=False):
        return self._copy([u for u in self.unmapped.values()
                           if u['merchant_id'] == merchant_id and u['resolved'] == resolved])

    async def mark_unmapped_resolved(self, merchant_id, sku, sequence):
        for u in self.unmapped.values():
            if u['merchant_id'] == merchant_id and (u['sku'] or '').lower() == sku.lower() and not u['resolved']:
                u['resolved'] = True
                u['resolved_sequence'] = sequence

    # runs
    async def insert_run(self, run):
        self.runs[run['run_id']] = copy.deepcopy(run)

    async def get_run(self, run_id):
        return copy.deepcopy(self.runs.get(run_id))

    async def update_run(self, run_id, fields):
        self.runs[run_id].update(copy.deepcopy(fields))

    async def increment_run(self, run_id, counters):
        run = self.runs[run_id]
        for key, n in counters.items():
            run[key] = run.get(key, 0) + n
        self.run_snapshots.append(copy.deepcopy(run))

    async def list_runs(self, merchant_id):
        rows = [r for r in self.runs.values() if r['merchant_id'] == merchant_id]
        return self._copy(sorted(rows, key=lambda r: r['created_at'], reverse=True))


async def seed_fleet(store, data):
    for alias in data['aliases']:
        await store.save_alias(alias)
    for pattern in data['patterns']:
        await store.save_pattern(pattern)
    await store.save_variations(data['variations'])
    for subscriber in data['subscribers']:
        await store.save_subscriber(subscriber)
    await store.save_order_history(data['merchant_id'], data['orders_by_customer'])


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def fleet():
    return generate_synthetic()
