"""
MongoDB persistence for the audit engine (motor).
One collection per record type; documents are plain dicts keyed by natural keys.
"""
import re

NO_ID = {'_id': 0}


class Store:
    def __init__(self, db):
        self.db = db

    # =========================================================================
    # CATALOG
    # =========================================================================
    async def list_variations(self, merchant_id, variation_type=None):
        query = {'merchant_id': merchant_id}
        if variation_type:
            query['variation_type'] = variation_type
        cursor = self.db.product_variations.find(query, NO_ID).sort([('order_count', -1), ('key', 1)])
        return await cursor.to_list(length=None)

    async def save_variations(self, variations):
        for v in variations:
            await self.db.product_variations.update_one(
                {'variation_id': v['variation_id']}, {'$set': dict(v)}, upsert=True)

    async def list_aliases(self, merchant_id):
        return await self.db.sku_aliases.find({'merchant_id': merchant_id}, NO_ID).sort('sequence', 1).to_list(length=None)

    async def count_aliases(self, merchant_id):
        return await self.db.sku_aliases.count_documents({'merchant_id': merchant_id})

    async def save_alias(self, alias):
        """Upsert on (merchant_id, sku); an existing alias keeps its id."""
        existing = await self.db.sku_aliases.find_one(
            {'merchant_id': alias['merchant_id'], 'sku': alias['sku']}, NO_ID)
        doc = dict(alias)
        if existing:
            doc['alias_id'] = existing['alias_id']
        await self.db.sku_aliases.update_one(
            {'merchant_id': doc['merchant_id'], 'sku': doc['sku']}, {'$set': doc}, upsert=True)
        return doc

    async def delete_alias(self, alias_id):
        await self.db.sku_aliases.delete_one({'alias_id': alias_id})

    async def list_patterns(self, merchant_id):
        return await self.db.product_patterns.find({'merchant_id': merchant_id}, NO_ID).to_list(length=None)

    async def save_pattern(self, pattern):
        await self.db.product_patterns.update_one(
            {'pattern_id': pattern['pattern_id']}, {'$set': dict(pattern)}, upsert=True)

    async def delete_pattern(self, pattern_id):
        result = await self.db.product_patterns.delete_one({'pattern_id': pattern_id})
        return result.deleted_count

    async def list_suggestions(self, merchant_id, status=None):
        query = {'merchant_id': merchant_id}
        if status:
            query['status'] = status
        return await self.db.classification_queue.find(query, NO_ID).to_list(length=None)

    async def replace_pending_suggestions(self, merchant_id, entries):
        await self.db.classification_queue.delete_many({'merchant_id': merchant_id, 'status': 'pending'})
        if entries:
            await self.db.classification_queue.insert_many([dict(e) for e in entries])

    async def save_suggestions(self, entries):
        for e in entries:
            await self.db.classification_queue.update_one(
                {'suggestion_id': e['suggestion_id']}, {'$set': dict(e)}, upsert=True)

    # =========================================================================
    # SUBSCRIBERS
    # =========================================================================
    async def list_subscribers(self, merchant_id, migration_status=None):
        query = {'merchant_id': merchant_id}
        if migration_status:
            query['migration_status'] = migration_status
        return await self.db.subscribers.find(query, NO_ID).sort('subscriber_id', 1).to_list(length=None)

    async def pending_subscriber_ids(self, merchant_id):
        docs = await self.list_subscribers(merchant_id, 'pending')
        return [d['subscriber_id'] for d in docs]

    async def get_subscriber(self, subscriber_id):
        return await self.db.subscribers.find_one({'subscriber_id': subscriber_id}, NO_ID)

    async def save_subscriber(self, subscriber):
        await self.db.subscribers.update_one(
            {'subscriber_id': subscriber['subscriber_id']}, {'$set': dict(subscriber)}, upsert=True)

    async def set_subscriber_status(self, subscriber_id, migration_status):
        await self.db.subscribers.update_one(
            {'subscriber_id': subscriber_id}, {'$set': {'migration_status': migration_status}})

    async def get_state(self, subscriber_id):
        return await self.db.subscriber_states.find_one({'subscriber_id': subscriber_id}, NO_ID)

    async def save_state(self, state):
        await self.db.subscriber_states.update_one(
            {'subscriber_id': state['subscriber_id']}, {'$set': dict(state)}, upsert=True)

    async def update_state(self, subscriber_id, fields):
        await self.db.subscriber_states.update_one({'subscriber_id': subscriber_id}, {'$set': fields})

    async def commit_system_state(self, state, previous=None):
        """Conditional system write; False when a human adjusted the state or it already moved past."""
        if previous is None:
            fields = {k: v for k, v in state.items() if k != 'subscriber_id'}
            result = await self.db.subscriber_states.update_one(
                {'subscriber_id': state['subscriber_id']}, {'$setOnInsert': fields}, upsert=True)
            return result.upserted_id is not None
        result = await self.db.subscriber_states.update_one(
            {'subscriber_id': state['subscriber_id'], 'manually_adjusted': {'$ne': True},
             'current_position': {'$lt': state['current_position']}},
            {'$set': dict(state)})
        return result.modified_count == 1

    async def load_order_history(self, merchant_id):
        docs = await self.db.order_history.find({'merchant_id': merchant_id}, NO_ID).to_list(length=None)
        return {d['customer_id']: d['orders'] for d in docs}

    async def save_order_history(self, merchant_id, orders_by_customer):
        for customer_id, orders in orders_by_customer.items():
            await self.db.order_history.update_one(
                {'merchant_id': merchant_id, 'customer_id': customer_id},
                {'$set': {'merchant_id': merchant_id, 'customer_id': customer_id, 'orders': orders}},
                upsert=True)

    # =========================================================================
    # AUDIT LOGS & UNMAPPED ITEMS
    # =========================================================================
    async def insert_audit_log(self, entry):
        await self.db.audit_logs.insert_one(dict(entry))

    async def get_audit_log(self, audit_log_id):
        return await self.db.audit_logs.find_one({'audit_log_id': audit_log_id}, NO_ID)

    async def transition_audit_log(self, audit_log_id, from_status, fields):
        """Conditional update; False when the entry is no longer in from_status."""
        result = await self.db.audit_logs.update_one(
            {'audit_log_id': audit_log_id, 'status': from_status}, {'$set': fields})
        return result.modified_count == 1

    async def list_audit_logs(self, merchant_id, status=None, run_id=None, limit=0):
        query = {'merchant_id': merchant_id}
        if status:
            query['status'] = status
        if run_id:
            query['run_id'] = run_id
        cursor = self.db.audit_logs.find(query, NO_ID).sort('created_at', 1)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(length=None)

    async def save_unmapped(self, items):
        for item in items:
            key = {'merchant_id': item['merchant_id'], 'order_id': item['order_id'],
                   'product_name': item['product_name']}
            await self.db.unmapped_items.update_one(key, {'$set': dict(item)}, upsert=True)

    async def list_unmapped(self, merchant_id, resolved=False):
        query = {'merchant_id': merchant_id, 'resolved': resolved}
        return await self.db.unmapped_items.find(query, NO_ID).to_list(length=None)

    async def mark_unmapped_resolved(self, merchant_id, sku, sequence):
        await self.db.unmapped_items.update_many(
            {'merchant_id': merchant_id, 'sku': {'$regex': f'^{re.escape(sku)}$', '$options': 'i'}, 'resolved': False},
            {'$set': {'resolved': True, 'resolved_sequence': sequence}})

    # =========================================================================
    # MIGRATION RUNS
    # =========================================================================
    async def insert_run(self, run):
        await self.db.migration_runs.insert_one(dict(run))

    async def get_run(self, run_id):
        return await self.db.migration_runs.find_one({'run_id': run_id}, NO_ID)

    async def update_run(self, run_id, fields):
        await self.db.migration_runs.update_one({'run_id': run_id}, {'$set': fields})

    async def increment_run(self, run_id, counters):
        await self.db.migration_runs.update_one({'run_id': run_id}, {'$inc': counters})

    async def list_runs(self, merchant_id):
        return await self.db.migration_runs.find(
            {'merchant_id': merchant_id}, NO_ID).sort('created_at', -1).to_list(length=None)
