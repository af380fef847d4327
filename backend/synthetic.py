"""
Synthetic Subscription Fleet Generator
Seeded merchant with a 12-box monthly series, SKU aliases, order histories and
ground-truth anomalies for every detector flag.
"""
import random
from datetime import datetime, timezone
from calendar import monthrange

from engine import apply_classification, make_alias, make_pattern, scan_variations
from prepaid import model_subscription

SERIES_NAME = 'Everlore Hollow'
SERIES_LENGTH = 12
DEFAULT_NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)

FIRST_NAMES = [
    "Ava", "Ben", "Cleo", "Dev", "Elif", "Finn", "Gia", "Hugo", "Iris", "Jonah",
    "Kira", "Leo", "Maya", "Nico", "Omar", "Pia", "Quinn", "Rosa", "Sami", "Theo",
]

# Ground truth, by subscriber index
GAP = 3            # box 3 never shipped
DUPLICATE = 7      # box 2 shipped in two separate orders
TIME_TRAVELER = 11  # box 4 ordered before box 3
NO_HISTORY = 15    # no orders at all
MULTIPLE_SUBS = 19  # two active subscriptions
TIER_CHANGE = 23   # Standard -> Deluxe with no upgrade on record
UPGRADED = 27      # Standard -> Deluxe with an upgrade on record (clean)
PREPAID_ASSUMED = 31  # prepaid flag property, no total anywhere
PREPAID_12 = 33    # 12-month charge, monthly shipping (clean)
SHIPPING_LINE = 1  # shipping protection line item (filtered, clean)
ADDON = 5          # enamel pin classified as addon (clean)
UNMAPPED = 9       # unknown sticker SKU (queued, clean)
PATTERN = 13       # SKU-less "Chapter N" item resolved by pattern (clean)
REFUNDED = 17      # refunded duplicate order (skipped, clean)


def add_months(dt, months):
    y, m = divmod(dt.month - 1 + months, 12)
    year, month = dt.year + y, m + 1
    return dt.replace(year=year, month=month, day=min(dt.day, monthrange(year, month)[1]))


def box_sku(n, tier='Standard'):
    return f"EH-{'DLX' if tier == 'Deluxe' else 'STD'}-{n:02d}"


def box_item(n, tier='Standard'):
    return {'sku': box_sku(n, tier), 'product_name': f"{SERIES_NAME} Box {n}",
            'variant_title': tier, 'quantity': 1}


def generate_synthetic(seed=42, count=37, merchant_id='demo-merchant', now=None):
    rng = random.Random(seed)
    now = now or DEFAULT_NOW
    order_number = 1000

    aliases = []
    for n in range(1, SERIES_LENGTH + 1):
        for tier in ('Standard', 'Deluxe'):
            aliases.append(make_alias(merchant_id, box_sku(n, tier), n, label=f"Box {n}", tier=tier))
    patterns = [make_pattern(merchant_id, 'Chapter {N}', 'contains', 0)]

    subscribers, orders_by_customer, expected = [], {}, {}
    for idx in range(count):
        billing_id = str(7000 + idx)
        order_customer_id = str(9000 + idx)
        subscriber_id = f"{merchant_id}-{billing_id}"
        email = f"{FIRST_NAMES[idx % len(FIRST_NAMES)].lower()}{idx + 1:02d}@example.com"
        created = datetime(2024, 1, 5, 10, 0, tzinfo=timezone.utc).replace(day=1 + idx % 28)
        boxes = 3 + idx % 6

        def order(at, items, status='paid'):
            nonlocal order_number
            order_number += 1
            return {'order_id': str(5000000 + order_number), 'order_number': order_number,
                    'created_at': at.isoformat(), 'financial_status': status, 'email': email,
                    'customer_id': order_customer_id, 'line_items': items}

        orders = []
        upgrades = []
        flags = []
        for n in range(1, boxes + 1):
            at = add_months(created, n - 1).replace(hour=rng.randint(8, 20))
            tier = 'Standard'
            if idx in (TIER_CHANGE, UPGRADED) and n > boxes // 2:
                tier = 'Deluxe'
            if idx == GAP and n == 3:
                continue
            if idx == TIME_TRAVELER and n in (3, 4):
                at = add_months(created, (n - 1) + (1 if n == 3 else -1))
            items = [box_item(n, tier)]
            if idx == PATTERN and n == boxes:
                items = [{'sku': None, 'product_name': f"{SERIES_NAME} Chapter {n}", 'variant_title': None,
                          'quantity': 1}]
            if idx == SHIPPING_LINE:
                items.append({'sku': None, 'product_name': 'Shipping Protection', 'variant_title': None,
                              'quantity': 1})
            if idx == ADDON and n == 2:
                items.append({'sku': 'EH-PIN', 'product_name': 'Everlore Enamel Pin', 'variant_title': None,
                              'quantity': 1})
            if idx == UNMAPPED and n == 1:
                items.append({'sku': 'EH-STICKER', 'product_name': 'Mystery Sticker Pack', 'variant_title': None,
                              'quantity': 1})
            orders.append(order(at, items))
            if idx == DUPLICATE and n == 2:
                orders.append(order(at.replace(day=min(at.day + 5, 28)), [box_item(2)]))
            if idx == REFUNDED and n == 2:
                orders.append(order(at.replace(day=min(at.day + 3, 28)), [box_item(2)], status='refunded'))
            if idx == UPGRADED and n == boxes // 2:
                upgrades.append({'date': at.replace(day=min(at.day + 7, 28)).isoformat(),
                                 'tier': 'Deluxe'})
        if idx == NO_HISTORY:
            orders = []

        sub = {
            'subscription_id': str(30000 + idx), 'customer_id': billing_id,
            'created_at': created.isoformat(), 'status': 'active', 'cancelled_at': None,
            'cancellation_reason': None,
            'charge_interval': {'unit': 'month', 'frequency': 1},
            'ship_interval': {'unit': 'month', 'frequency': 1},
            'properties': [], 'next_charge_at': None,
            'sku': box_sku(1), 'product_title': SERIES_NAME,
        }
        subscriptions = [sub]
        if idx == PREPAID_ASSUMED:
            sub['properties'] = [{'name': 'subscription_type', 'value': 'Prepaid'}]
        if idx == PREPAID_12:
            sub['charge_interval'] = {'unit': 'month', 'frequency': 12}
        if idx == MULTIPLE_SUBS:
            subscriptions.append(dict(sub, subscription_id=str(40000 + idx)))

        if idx == NO_HISTORY:
            flags.append('no_history')
        if idx == GAP:
            flags.append('gap_detected')
        if idx == DUPLICATE:
            flags.append('duplicate_box')
        if idx == TIME_TRAVELER:
            flags.append('time_traveler')
        if idx == TIER_CHANGE:
            flags.append('tier_change')
        if idx == MULTIPLE_SUBS:
            flags.append('multiple_subs')
        if idx == PREPAID_ASSUMED:
            flags.append('prepaid_total_assumed')

        subscribers.append({
            'subscriber_id': subscriber_id, 'merchant_id': merchant_id, 'email': email,
            'billing_customer_id': billing_id, 'order_customer_id': order_customer_id,
            'subscriptions': [model_subscription(s, now) for s in subscriptions],
            'upgrades': upgrades, 'migration_status': 'pending', 'imported_at': now.isoformat(),
        })
        orders_by_customer[order_customer_id] = orders
        expected[subscriber_id] = flags

    all_orders = [o for rows in orders_by_customer.values() for o in rows]
    variations = scan_variations(all_orders, merchant_id=merchant_id)
    apply_classification(variations, [v['variation_id'] for v in variations if v['sku'] == 'EH-PIN'],
                         'addon', actor='synthetic', at=now.isoformat())
    apply_classification(variations, [v['variation_id'] for v in variations
                                      if v['product_name'] == 'Shipping Protection'],
                         'ignored', actor='synthetic', at=now.isoformat())

    flagged = sum(1 for f in expected.values() if f)
    return {
        'merchant_id': merchant_id,
        'aliases': aliases,
        'patterns': patterns,
        'variations': variations,
        'subscribers': subscribers,
        'orders_by_customer': orders_by_customer,
        'expected_flags': expected,
        'metadata': {
            'series': SERIES_NAME, 'series_length': SERIES_LENGTH,
            'subscribers': len(subscribers), 'orders': len(all_orders),
            'expected_flagged': flagged, 'expected_clean': len(subscribers) - flagged,
        },
    }
