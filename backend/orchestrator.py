"""
Migration Run Orchestrator
Applies reconstruction + anomaly detection across a merchant's subscribers in
sequential fixed-size batches, persisting one audit log entry per subscriber.
"""
import asyncio
import logging

from adapters import FetchError
from engine import (AUDIT_MODES, AliasSnapshot, InvariantViolation, audit_subscriber,
                    build_audit_context, failed_audit, new_id, now_iso)
from prepaid import apply_charge_success, model_subscription, utcnow
from resolution import commit_clean, primary_subscription, refresh_prepaid_state

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
MAX_BATCH_SIZE = 10
DEFAULT_BATCH_DELAY = 0.2


class PreconditionError(InvariantViolation):
    """Required configuration is missing, e.g. no SKU aliases for the merchant."""


# =============================================================================
# SUBSCRIBER IMPORT
# =============================================================================
def build_subscriber(merchant_id, customer, subscriptions, now, existing=None):
    existing = existing or {}
    return {
        'subscriber_id': f"{merchant_id}-{customer['customer_id']}",
        'merchant_id': merchant_id,
        'email': customer.get('email', ''),
        'billing_customer_id': customer['customer_id'],
        'order_customer_id': customer.get('order_customer_id') or existing.get('order_customer_id'),
        'subscriptions': [model_subscription(s, now) for s in subscriptions],
        'upgrades': existing.get('upgrades', []),
        'migration_status': existing.get('migration_status', 'pending'),
        'imported_at': now.isoformat(),
    }


async def import_subscribers(store, merchant_id, billing, now=None):
    """Pull customers and subscriptions from the billing platform and model them.

    Re-imports refresh subscription data but keep migration status and upgrades.
    """
    now = now or utcnow()
    subs_by_customer = {}
    async for sub in billing.iter_subscriptions():
        subs_by_customer.setdefault(sub['customer_id'], []).append(sub)
    imported = 0
    prepaid = 0
    async for customer in billing.iter_customers():
        subs = subs_by_customer.get(customer['customer_id'])
        if not subs:
            continue
        existing = await store.get_subscriber(f"{merchant_id}-{customer['customer_id']}")
        doc = build_subscriber(merchant_id, customer, subs, now, existing)
        await store.save_subscriber(doc)
        imported += 1
        prepaid += sum(1 for s in doc['subscriptions'] if s['is_prepaid'])
    logger.info(f"Imported {imported} subscribers for {merchant_id} ({prepaid} prepaid subscriptions)")
    return {'imported': imported, 'prepaid_subscriptions': prepaid}


async def recalculate_prepaid(store, subscriber_id, billing):
    """Replace delivered-count estimates with live successful-charge counts.

    Returns (subscriber, state); state is None until a position has been committed.
    """
    subscriber = await store.get_subscriber(subscriber_id)
    if subscriber is None:
        raise InvariantViolation(f"Unknown subscriber {subscriber_id}")
    updated = []
    for sub in subscriber.get('subscriptions', []):
        if sub.get('is_prepaid'):
            count = await billing.count_successful_charges(subscriber['billing_customer_id'],
                                                           sub['subscription_id'])
            sub = apply_charge_success(sub, count)
            if sub['effective_status'] == 'expired':
                logger.info(f"Prepaid subscription {sub['subscription_id']} of {subscriber_id} is used up")
        updated.append(sub)
    subscriber['subscriptions'] = updated
    await store.save_subscriber(subscriber)
    return subscriber, await refresh_prepaid_state(store, subscriber)


# =============================================================================
# RUN LIFECYCLE
# =============================================================================
async def start_run(store, merchant_id, series=None, mode='sku_mapping', subscriber_ids=None):
    if mode not in AUDIT_MODES:
        raise InvariantViolation(f"Unknown audit mode '{mode}'. Allowed: {', '.join(AUDIT_MODES)}")
    if await store.count_aliases(merchant_id) == 0:
        raise PreconditionError('Please map at least one SKU before starting the audit.')
    ids = list(subscriber_ids) if subscriber_ids else await store.pending_subscriber_ids(merchant_id)
    if not ids:
        raise PreconditionError('No pending subscribers to audit.')
    run = {
        'run_id': new_id('RUN'), 'merchant_id': merchant_id, 'status': 'pending',
        'mode': mode, 'series': dict(series or {'sequential': True, 'total_length': None}),
        'subscriber_ids': ids, 'total_subscribers': len(ids),
        'processed_subscribers': 0, 'clean_count': 0, 'flagged_count': 0,
        'error_count': 0, 'unmapped_count': 0,
        'cancel_requested': False, 'abandoned_at': None,
        'created_at': now_iso(), 'started_at': None, 'completed_at': None, 'error': None,
    }
    await store.insert_run(run)
    return run


async def cancel_run(store, run_id):
    run = await store.get_run(run_id)
    if run is None:
        raise InvariantViolation(f"Unknown run {run_id}")
    if run['status'] not in ('pending', 'running'):
        raise InvariantViolation(f"Run {run_id} is already {run['status']}.")
    await store.update_run(run_id, {'cancel_requested': True})
    return await store.get_run(run_id)


def run_progress(run):
    total = run.get('total_subscribers') or 0
    processed = run.get('processed_subscribers') or 0
    return {
        'percent': round(processed / total * 100, 1) if total else 0.0,
        'processed': processed,
        'remaining': max(total - processed, 0),
        'needs_review': run.get('flagged_count') or 0,
    }


class MigrationOrchestrator:
    def __init__(self, store, orders, batch_size=DEFAULT_BATCH_SIZE, batch_delay=DEFAULT_BATCH_DELAY,
                 charges=None):
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        self.store = store
        self.orders = orders
        self.charges = charges
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    async def execute(self, run_id):
        store = self.store
        run = await store.get_run(run_id)
        if run is None:
            raise InvariantViolation(f"Unknown run {run_id}")
        if run['status'] != 'pending':
            raise InvariantViolation(f"Run {run_id} is {run['status']}; a run never resumes.")
        await store.update_run(run_id, {'status': 'running', 'started_at': now_iso()})
        try:
            merchant_id = run['merchant_id']
            snapshot = AliasSnapshot(await store.list_aliases(merchant_id),
                                     await store.list_variations(merchant_id),
                                     await store.list_patterns(merchant_id))
            ids = run['subscriber_ids']
            batches = [ids[i:i + self.batch_size] for i in range(0, len(ids), self.batch_size)]
            for n, batch in enumerate(batches, 1):
                if (await store.get_run(run_id)).get('cancel_requested'):
                    logger.info(f"Run {run_id} abandoned by operator before batch {n}/{len(batches)}")
                    await store.update_run(run_id, {'abandoned_at': now_iso()})
                    return await store.get_run(run_id)
                if n > 1 and self.batch_delay:
                    await asyncio.sleep(self.batch_delay)
                entries = await asyncio.gather(*(self._audit_one(run, snapshot, sid) for sid in batch))
                await store.increment_run(run_id, {
                    'processed_subscribers': len(entries),
                    'clean_count': sum(1 for e in entries if e['status'] == 'clean'),
                    'flagged_count': sum(1 for e in entries if e['status'] == 'flagged'),
                    'error_count': sum(1 for e in entries if e.get('error')),
                    'unmapped_count': sum(e['unmapped_count'] for e in entries),
                })
                logger.info(f"Run {run_id}: batch {n}/{len(batches)} done ({len(entries)} subscribers)")
            await store.update_run(run_id, {'status': 'completed', 'completed_at': now_iso()})
        except Exception as e:
            logger.error(f"Migration run {run_id} failed: {e}", exc_info=True)
            await store.update_run(run_id, {'status': 'failed', 'error': str(e), 'completed_at': now_iso()})
        return await store.get_run(run_id)

    async def _history(self, mode, subscriber, email):
        """Orders, plus billing charges for the modes that count them."""
        orders, charges = [], None
        if mode != 'charge_count':
            orders = await self.orders.list_orders(subscriber.get('order_customer_id'), email=email or None)
        if mode in ('charge_count', 'hybrid') and self.charges is not None:
            sub = primary_subscription(subscriber) or {}
            charges = await self.charges.list_charges(subscriber['billing_customer_id'],
                                                      sub.get('subscription_id'))
        return orders, charges

    async def _audit_one(self, run, snapshot, subscriber_id):
        store = self.store
        series = run.get('series') or {}
        subscriber = await store.get_subscriber(subscriber_id)
        email = (subscriber or {}).get('email', '')
        if subscriber is None:
            result = failed_audit(f"Subscriber {subscriber_id} not found")
        else:
            try:
                orders, charges = await self._history(run['mode'], subscriber, email)
            except (FetchError, ValueError) as e:
                logger.warning(f"Order history fetch failed for {subscriber_id}: {e}")
                result = failed_audit(e)
            else:
                result = audit_subscriber(orders, snapshot, build_audit_context(subscriber, series, snapshot),
                                          run['mode'], series, email, charges)

        unmapped = result.pop('unmapped_items')
        entry = {
            'audit_log_id': new_id('AUD'), 'merchant_id': run['merchant_id'], 'run_id': run['run_id'],
            'subscriber_id': subscriber_id, 'email': email, **result,
            'unmapped_count': len(unmapped),
            'resolved_next_box': None, 'resolved_by': None, 'resolved_at': None,
            'resolution_note': None, 'override': None, 'created_at': now_iso(),
        }
        await store.insert_audit_log(entry)
        if unmapped:
            await store.save_unmapped([{**u, 'merchant_id': run['merchant_id'], 'run_id': run['run_id'],
                                        'resolved': False, 'resolved_sequence': None} for u in unmapped])
        if subscriber is not None:
            if entry['status'] == 'clean':
                await commit_clean(store, entry, subscriber)
            await store.set_subscriber_status(subscriber_id, 'audited' if entry['status'] == 'clean' else 'flagged')
        return entry
