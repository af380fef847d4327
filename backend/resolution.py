"""
Resolution Workflow
Human review of flagged audit outcomes and the automatic commit of clean ones.
Entries move flagged -> resolved | skipped and are immutable afterwards.
"""
import logging

from engine import InvariantViolation, now_iso

logger = logging.getLogger(__name__)


def primary_subscription(subscriber):
    """Earliest active subscription, else the earliest of any status."""
    subs = sorted((subscriber or {}).get('subscriptions', []), key=lambda s: str(s.get('created_at') or ''))
    active = [s for s in subs if (s.get('effective_status') or s.get('status')) == 'active']
    if active:
        return active[0]
    return subs[0] if subs else None


def build_state(subscriber, position, actor, actor_type, audit_log_id, previous=None):
    sub = primary_subscription(subscriber) or {}
    history = list((previous or {}).get('history', []))
    if previous:
        history.append({
            'current_position': previous['current_position'], 'updated_by': previous.get('updated_by'),
            'actor_type': previous.get('actor_type'), 'audit_log_id': previous.get('audit_log_id'),
            'replaced_at': now_iso(),
        })
    return {
        'subscriber_id': subscriber['subscriber_id'],
        'merchant_id': subscriber.get('merchant_id'),
        'current_position': position,
        'next_sequence': position + 1,
        'status': sub.get('effective_status') or 'active',
        'is_prepaid': bool(sub.get('is_prepaid')),
        'prepaid_total': sub.get('prepaid_total'),
        'prepaid_remaining': sub.get('prepaid_remaining'),
        'last_reconciled_at': now_iso(),
        'updated_by': actor,
        'actor_type': actor_type,
        'audit_log_id': audit_log_id,
        'manually_adjusted': actor_type == 'human' or bool((previous or {}).get('manually_adjusted')),
        'history': history,
    }


async def refresh_prepaid_state(store, subscriber):
    """Carry refreshed prepaid figures into the committed state; the position is left alone."""
    if await store.get_state(subscriber['subscriber_id']) is None:
        return None
    sub = primary_subscription(subscriber) or {}
    await store.update_state(subscriber['subscriber_id'], {
        'status': sub.get('effective_status') or 'active',
        'is_prepaid': bool(sub.get('is_prepaid')),
        'prepaid_total': sub.get('prepaid_total'),
        'prepaid_remaining': sub.get('prepaid_remaining'),
        'last_reconciled_at': now_iso(),
    })
    return await store.get_state(subscriber['subscriber_id'])


async def commit_clean(store, entry, subscriber=None):
    """System commit of a clean outcome. Never lowers the position, never overrides a human."""
    if entry['status'] != 'clean':
        raise InvariantViolation(f"Only clean outcomes commit automatically (entry is {entry['status']}).")
    subscriber = subscriber or await store.get_subscriber(entry['subscriber_id'])
    if subscriber is None:
        raise InvariantViolation(f"Unknown subscriber {entry['subscriber_id']}")
    previous = await store.get_state(entry['subscriber_id'])
    if previous and previous.get('manually_adjusted'):
        logger.info(f"Subscriber {entry['subscriber_id']} was adjusted by a human; automatic commit skipped")
        return previous
    position = entry['proposed_next_box'] - 1
    if previous and previous['current_position'] >= position:
        return previous
    state = build_state(subscriber, position, 'system', 'system', entry['audit_log_id'], previous)
    if not await store.commit_system_state(state, previous):
        logger.info(f"State of {entry['subscriber_id']} changed during commit; automatic commit skipped")
        return await store.get_state(entry['subscriber_id'])
    return state


async def _flagged_entry(store, audit_log_id, action):
    entry = await store.get_audit_log(audit_log_id)
    if entry is None:
        raise InvariantViolation(f"Unknown audit log entry {audit_log_id}")
    if entry['status'] != 'flagged':
        raise InvariantViolation(
            f"Cannot {action} an entry that is {entry['status']}; only flagged entries can be {action}d.")
    return entry


async def resolve_entry(store, audit_log_id, next_sequence, actor, note=None):
    """Close a flagged entry with the human-chosen next installment and commit it.

    Returns (entry, state).
    """
    if isinstance(next_sequence, bool) or not isinstance(next_sequence, int) or next_sequence < 1:
        raise InvariantViolation('Next installment must be an integer of at least 1.')
    entry = await _flagged_entry(store, audit_log_id, 'resolve')
    fields = {
        'status': 'resolved',
        'resolved_next_box': next_sequence,
        'override': next_sequence != entry.get('proposed_next_box'),
        'resolved_by': actor,
        'resolved_at': now_iso(),
        'resolution_note': note or None,
    }
    if not await store.transition_audit_log(audit_log_id, 'flagged', fields):
        raise InvariantViolation(f"Audit log entry {audit_log_id} was closed by someone else.")
    entry.update(fields)

    subscriber = await store.get_subscriber(entry['subscriber_id'])
    if subscriber is None:
        raise InvariantViolation(f"Unknown subscriber {entry['subscriber_id']}")
    previous = await store.get_state(entry['subscriber_id'])
    state = build_state(subscriber, next_sequence - 1, actor, 'human', audit_log_id, previous)
    await store.save_state(state)
    await store.set_subscriber_status(entry['subscriber_id'], 'resolved')
    logger.info(f"Audit entry {audit_log_id} resolved by {actor}: next installment {next_sequence}"
                f"{' (override)' if fields['override'] else ''}")
    return entry, state


async def skip_entry(store, audit_log_id, reason, actor):
    if not reason or not str(reason).strip():
        raise InvariantViolation('A reason is required to skip an entry.')
    entry = await _flagged_entry(store, audit_log_id, 'skip')
    fields = {
        'status': 'skipped',
        'resolved_by': actor,
        'resolved_at': now_iso(),
        'resolution_note': str(reason).strip(),
    }
    if not await store.transition_audit_log(audit_log_id, 'flagged', fields):
        raise InvariantViolation(f"Audit log entry {audit_log_id} was closed by someone else.")
    entry.update(fields)
    await store.set_subscriber_status(entry['subscriber_id'], 'skipped')
    return entry


async def review_queue(store, merchant_id, status='flagged', run_id=None):
    return await store.list_audit_logs(merchant_id, status=status, run_id=run_id)
