"""
Installment Sequence Engine v1.0
Deterministic, rule-based reconstruction of subscription installment history.
Product classification, SKU alias resolution, timeline reconstruction and
anomaly detection. No I/O, no wall-clock reads beyond explicit parameters.
"""
import re
import uuid
from datetime import date, datetime, timezone
from collections import defaultdict

# =============================================================================
# CONSTANTS
# =============================================================================
VARIATION_TYPES = ['subscription', 'addon', 'ignored']
PATTERN_TYPES = ['contains', 'starts_with', 'ends_with', 'regex']
AUDIT_MODES = ['sku_mapping', 'order_count', 'charge_count', 'hybrid']
AUDIT_STATUSES = ['clean', 'flagged', 'resolved', 'skipped']

# Display priority: the first flag raised leads the review screen.
FLAG_ORDER = ['no_history', 'gap_detected', 'duplicate_box', 'time_traveler',
              'tier_change', 'multiple_subs', 'prepaid_total_assumed']

FLAG_LABELS = {
    'no_history': 'No Subscription History Found',
    'gap_detected': 'Gap in Sequence',
    'duplicate_box': 'Duplicate Installment Shipped',
    'time_traveler': 'Out-of-Order Shipping',
    'tier_change': 'Unexplained Tier Change',
    'multiple_subs': 'Multiple Active Subscriptions',
    'prepaid_total_assumed': 'Prepaid Total Assumed (12)',
}

SKIPPED_FINANCIAL_STATUSES = ['voided', 'refunded']

# Series key for subscriptions whose product resolves through the merchant's aliases.
MAPPED_SERIES = 'mapped'

MATCH_CONFIDENCE = {'sku': 1.0, 'variation': 1.0, 'pattern': 0.8, 'count': 1.0, 'charge': 1.0}

NON_SUBSCRIPTION_PATTERNS = [re.compile(p, re.I) for p in (
    r'shipping', r'\btax\b', r'\btip\b', r'gratuity', r'gift\s*card', r'store\s*credit',
    r'discount', r'coupon', r'handling', r'insurance', r'\brush\b', r'expedited', r'upgrade',
)]

_MIN_DT = datetime.min.replace(tzinfo=timezone.utc)


class InvariantViolation(ValueError):
    """A requested change would break a catalog or workflow invariant."""


# =============================================================================
# HELPERS
# =============================================================================
def normalize_sku(s):
    if s is None:
        return ''
    return str(s).strip().casefold()


def parse_datetime(s):
    """Parse ISO-8601 strings, dates and datetimes into aware UTC datetimes."""
    if s is None or str(s).strip() == '':
        return None
    if isinstance(s, datetime):
        return s.replace(tzinfo=timezone.utc) if s.tzinfo is None else s.astimezone(timezone.utc)
    if isinstance(s, date):
        return datetime(s.year, s.month, s.day, tzinfo=timezone.utc)
    text = str(s).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        try:
            dt = datetime.strptime(text[:10], '%Y-%m-%d')
        except ValueError:
            return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)


def iso(dt):
    parsed = parse_datetime(dt)
    return parsed.isoformat() if parsed else None


def now_iso():
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix):
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def looks_like_non_subscription(name):
    return any(p.search(name or '') for p in NON_SUBSCRIPTION_PATTERNS)


def explain_flags(flags):
    if not flags:
        return 'History is consistent. Proposed installment applied automatically.'
    labels = ', '.join(FLAG_LABELS.get(f, f) for f in flags)
    return (f"Flagged because: {labels}. Review the order history to determine "
            f"the correct next installment.")


# =============================================================================
# PRODUCT CATALOG
# =============================================================================
def variation_key(product_name, variant_title, sku):
    return f"{product_name or ''}|||{variant_title or ''}|||{sku or ''}"


def item_key(item):
    return variation_key(item.get('product_name'), item.get('variant_title'), item.get('sku'))


def new_variation(merchant_id, item):
    return {
        'variation_id': new_id('VAR'), 'merchant_id': merchant_id, 'key': item_key(item),
        'product_name': item.get('product_name') or '', 'variant_title': item.get('variant_title') or None,
        'sku': item.get('sku') or None, 'order_count': 0, 'first_seen': None, 'last_seen': None,
        'sample_order_numbers': [], 'variation_type': 'subscription',
        'alias_id': None, 'sequence': None, 'tier': None,
        'classified_by': None, 'classified_at': None,
    }


def scan_variations(orders, existing=None, merchant_id=None):
    """Catalog scan: one variation per distinct (product, variant, sku).

    Existing variations keep their identity and classification; counts and
    seen-timestamps are recomputed from the scanned orders.
    """
    by_key = {v['key']: dict(v) for v in existing or []}
    touched = set()
    for order in orders:
        created = parse_datetime(order.get('created_at'))
        for item in order.get('line_items', []):
            key = item_key(item)
            v = by_key.get(key)
            if v is None:
                v = new_variation(merchant_id, item)
                by_key[key] = v
            if key not in touched:
                touched.add(key)
                v.update({'order_count': 0, 'first_seen': None, 'last_seen': None, 'sample_order_numbers': []})
            v['order_count'] += int(item.get('quantity') or 1)
            if created:
                if v['first_seen'] is None or created < parse_datetime(v['first_seen']):
                    v['first_seen'] = created.isoformat()
                if v['last_seen'] is None or created > parse_datetime(v['last_seen']):
                    v['last_seen'] = created.isoformat()
            if len(v['sample_order_numbers']) < 3 and order.get('order_number') is not None:
                v['sample_order_numbers'].append(order['order_number'])
    return sorted(by_key.values(), key=lambda v: (-v['order_count'], v['key']))


def classify(variation):
    return variation.get('variation_type') or 'subscription'


def apply_classification(variations, variation_ids, category, actor=None, at=None):
    """Bulk reclassification. Returns the variations that actually changed."""
    if category not in VARIATION_TYPES:
        raise InvariantViolation(f"Unknown classification '{category}'. Allowed: {', '.join(VARIATION_TYPES)}")
    ids = set(variation_ids)
    update = {'variation_type': category}
    if category != 'subscription':
        update.update({'alias_id': None, 'sequence': None, 'tier': None})
    changed = []
    for v in variations:
        if v['variation_id'] not in ids:
            continue
        if all(v.get(k) == val for k, val in update.items()):
            continue
        v.update(update)
        v['classified_by'] = actor
        v['classified_at'] = at or now_iso()
        changed.append(v)
    return changed


def assign_sequence(variations, variation_ids, sequence, tier=None, actor=None, at=None):
    if sequence is not None and (not isinstance(sequence, int) or sequence < 1):
        raise InvariantViolation('Sequence must be a positive integer.')
    ids = set(variation_ids)
    changed = []
    for v in variations:
        if v['variation_id'] not in ids:
            continue
        if classify(v) != 'subscription':
            raise InvariantViolation(
                f"Variation {v['variation_id']} is classified '{classify(v)}'; only subscription items carry a sequence.")
        if v.get('sequence') == sequence and v.get('tier') == tier:
            continue
        v['sequence'] = sequence
        v['tier'] = tier
        v['classified_by'] = actor
        v['classified_at'] = at or now_iso()
        changed.append(v)
    return changed


# =============================================================================
# SKU ALIASES & PATTERNS
# =============================================================================
def make_alias(merchant_id, sku, sequence, label=None, tier=None):
    key = normalize_sku(sku)
    if not key:
        raise InvariantViolation('Alias SKU is required.')
    if not isinstance(sequence, int) or sequence < 1:
        raise InvariantViolation('Alias sequence must be a positive integer.')
    return {'alias_id': new_id('ALS'), 'merchant_id': merchant_id, 'sku': key,
            'sequence': sequence, 'label': label, 'tier': tier}


def upsert_alias(aliases, alias):
    """Last write wins on (merchant, sku); the existing alias keeps its id."""
    result = []
    replaced = False
    for a in aliases:
        if a['merchant_id'] == alias['merchant_id'] and a['sku'] == alias['sku']:
            result.append({**alias, 'alias_id': a['alias_id']})
            replaced = True
        else:
            result.append(a)
    if not replaced:
        result.append(alias)
    return result


def alias_references(variations, alias_id):
    return [v for v in variations if v.get('alias_id') == alias_id]


def remove_alias(aliases, variations, alias_id, confirm=False):
    """Delete an alias; referencing variations are demoted to unassigned.

    Returns (remaining_aliases, demoted_variations).
    """
    if not any(a['alias_id'] == alias_id for a in aliases):
        raise InvariantViolation(f"Unknown alias {alias_id}")
    refs = alias_references(variations, alias_id)
    if refs and not confirm:
        raise InvariantViolation(
            f"Alias {alias_id} is referenced by {len(refs)} product variation(s). Confirm to unassign them.")
    for v in refs:
        v['alias_id'] = None
        v['sequence'] = None
    return [a for a in aliases if a['alias_id'] != alias_id], refs


def merge_aliases(aliases, variations, source_id, target_id):
    """Repoint variations from source to target, then drop the source."""
    ids = {a['alias_id'] for a in aliases}
    if source_id not in ids or target_id not in ids:
        raise InvariantViolation('Both aliases must exist to merge.')
    if source_id == target_id:
        raise InvariantViolation('Cannot merge an alias into itself.')
    refs = alias_references(variations, source_id)
    for v in refs:
        v['alias_id'] = target_id
    return [a for a in aliases if a['alias_id'] != source_id], refs


def make_pattern(merchant_id, pattern, pattern_type='contains', sequence=0):
    if pattern_type not in PATTERN_TYPES:
        raise InvariantViolation(f"Invalid pattern type. Allowed: {', '.join(PATTERN_TYPES)}")
    if not pattern:
        raise InvariantViolation('Pattern text is required.')
    candidate = {'pattern_id': new_id('PAT'), 'merchant_id': merchant_id, 'pattern': pattern,
                 'pattern_type': pattern_type, 'sequence': int(sequence or 0)}
    try:
        rx = _pattern_regex(candidate)
    except re.error as e:
        raise InvariantViolation(f"Invalid regex: {e}")
    if candidate['sequence'] <= 0 and rx.groups < 1:
        raise InvariantViolation('Pattern without a fixed sequence needs a {N} placeholder.')
    return candidate


def _pattern_regex(pattern):
    ptype = pattern.get('pattern_type', 'contains')
    text = pattern['pattern']
    if ptype == 'regex':
        return re.compile(text, re.I)
    body = re.escape(text).replace(re.escape('{N}'), r'(\d+)', 1)
    if ptype == 'starts_with':
        body = '^' + body
    elif ptype == 'ends_with':
        body = body + '$'
    return re.compile(body, re.I)


def match_pattern(name, pattern):
    try:
        rx = _pattern_regex(pattern)
    except re.error:
        return None
    m = rx.search(name or '')
    if not m:
        return None
    if int(pattern.get('sequence') or 0) > 0:
        return int(pattern['sequence'])
    if rx.groups and m.group(1) and m.group(1).isdigit():
        return int(m.group(1))
    return None


class AliasSnapshot:
    """Read model of one merchant's aliases, patterns and classifications.

    Loaded once per run and passed explicitly so reconstruction stays pure.
    """

    def __init__(self, aliases=(), variations=(), patterns=()):
        self.sku_map = {}
        self.alias_by_id = {}
        for a in aliases:
            key = normalize_sku(a.get('sku'))
            if key:
                self.sku_map[key] = a
            self.alias_by_id[a['alias_id']] = a
        self.by_key = {}
        self.by_sku = {}
        self.by_name = {}
        for v in sorted(variations, key=lambda v: v.get('variation_id', '')):
            self.by_key[v.get('key') or item_key(v)] = v
            sku = normalize_sku(v.get('sku'))
            if sku:
                self.by_sku.setdefault(sku, v)
            name = normalize_sku(v.get('product_name'))
            if name:
                self.by_name.setdefault(name, v)
        self.patterns = sorted(patterns, key=lambda p: p.get('pattern_id', ''))

    def __len__(self):
        return len(self.sku_map)

    def variation_for(self, item):
        v = self.by_key.get(item_key(item))
        if v is None and normalize_sku(item.get('sku')):
            v = self.by_sku.get(normalize_sku(item.get('sku')))
        if v is None:
            v = self.by_name.get(normalize_sku(item.get('product_name')))
        return v

    def classify_item(self, item):
        v = self.variation_for(item)
        return classify(v) if v else 'subscription'

    def _variation_sequence(self, v):
        if v is None or classify(v) != 'subscription':
            return None, None
        if v.get('sequence'):
            return int(v['sequence']), v.get('tier')
        alias = self.alias_by_id.get(v.get('alias_id'))
        if alias:
            return int(alias['sequence']), v.get('tier') or alias.get('tier')
        return None, None

    def _pattern_sequence(self, name):
        for p in self.patterns:
            seq = match_pattern(name, p)
            if seq is not None:
                return seq
        return None

    def resolve_item(self, item):
        """Returns (sequence, match_source, tier); sequence is None when unresolved."""
        variation = self.variation_for(item)
        for key in (normalize_sku(item.get('sku')), normalize_sku(item.get('product_name'))):
            alias = self.sku_map.get(key) if key else None
            if alias:
                tier = (variation or {}).get('tier') or alias.get('tier')
                return int(alias['sequence']), 'sku', tier
        seq, tier = self._variation_sequence(variation)
        if seq is not None:
            return seq, 'variation', tier
        seq = self._pattern_sequence(item.get('product_name'))
        if seq is not None:
            return seq, 'pattern', (variation or {}).get('tier')
        return None, None, None

    def resolve(self, sku_or_name):
        key = normalize_sku(sku_or_name)
        if not key:
            return None
        if key in self.sku_map:
            return int(self.sku_map[key]['sequence'])
        seq, _ = self._variation_sequence(self.by_sku.get(key) or self.by_name.get(key))
        if seq is not None:
            return seq
        return self._pattern_sequence(sku_or_name)


def unknown_sku_queue(items):
    """Group unresolved line items by SKU (or name when SKU-less) with counts."""
    groups = {}
    for it in items:
        key = normalize_sku(it.get('sku')) or 'name:' + normalize_sku(it.get('product_name'))
        g = groups.get(key)
        if g is None:
            g = groups[key] = {'sku': it.get('sku') or None, 'product_name': it.get('product_name') or '',
                               'count': 0, 'sample_order_numbers': []}
        g['count'] += 1
        if len(g['sample_order_numbers']) < 3 and it.get('order_number') is not None:
            g['sample_order_numbers'].append(it['order_number'])
    return sorted(groups.values(), key=lambda g: (-g['count'], g['sku'] or '', g['product_name']))


# =============================================================================
# SEQUENCE RECONSTRUCTION
# =============================================================================
def _event(order, item, sequence, source, tier):
    return {
        'sequence': sequence, 'date': iso(order.get('created_at')),
        'order_id': str(order.get('order_id', '')), 'order_number': order.get('order_number'),
        'sku': item.get('sku') or '', 'product_name': item.get('product_name') or '',
        'tier': tier, 'match_source': source,
    }


def _event_sort_key(e):
    return (e['sequence'], parse_datetime(e['date']) or _MIN_DT, e['order_number'] or 0, e['order_id'], e['sku'])


def _order_sort_key(order):
    return (parse_datetime(order.get('created_at')) or _MIN_DT, order.get('order_number') or 0,
            str(order.get('order_id', '')))


def _unmapped(order, item, email):
    return {
        'order_id': str(order.get('order_id', '')), 'order_number': order.get('order_number'),
        'order_date': iso(order.get('created_at')), 'sku': item.get('sku') or None,
        'product_name': item.get('product_name') or '',
        'customer_email': email or order.get('email') or '',
    }


def _sku_timeline(orders, snapshot, email):
    events, unmapped = [], []
    matched = defaultdict(int)
    excluded = 0
    for order in sorted(orders, key=_order_sort_key):
        if str(order.get('financial_status', '')).lower() in SKIPPED_FINANCIAL_STATUSES:
            continue
        for item in order.get('line_items', []):
            if snapshot.classify_item(item) != 'subscription':
                excluded += 1
                continue
            seq, source, tier = snapshot.resolve_item(item)
            if seq is None:
                if not looks_like_non_subscription(item.get('product_name')):
                    unmapped.append(_unmapped(order, item, email))
                continue
            matched[source] += 1
            events.append(_event(order, item, seq, source, tier))
    events.sort(key=_event_sort_key)
    return {'events': events, 'unmapped': unmapped, 'matched': dict(matched), 'excluded': excluded}


def _count_timeline(orders, snapshot, email):
    """Each resolvable subscription unit counts as the next installment, chronologically."""
    events, unmapped = [], []
    excluded = 0
    counter = 0
    for order in sorted(orders, key=_order_sort_key):
        if str(order.get('financial_status', '')).lower() in SKIPPED_FINANCIAL_STATUSES:
            continue
        for item in order.get('line_items', []):
            if snapshot.classify_item(item) != 'subscription':
                excluded += 1
                continue
            seq, _, tier = snapshot.resolve_item(item)
            if seq is None:
                if not looks_like_non_subscription(item.get('product_name')):
                    unmapped.append(_unmapped(order, item, email))
                continue
            for _ in range(max(int(item.get('quantity') or 1), 1)):
                counter += 1
                events.append(_event(order, item, counter, 'count', tier))
    return {'events': events, 'unmapped': unmapped, 'matched': {'count': len(events)} if events else {},
            'excluded': excluded}


def _charge_date(charge):
    return charge.get('processed_at') or charge.get('scheduled_at')


def _charge_timeline(charges):
    """Each successful billing charge is the next installment."""
    paid = [c for c in charges or [] if str(c.get('status') or 'success').lower() == 'success']
    paid.sort(key=lambda c: (parse_datetime(_charge_date(c)) or _MIN_DT, str(c.get('charge_id', ''))))
    events = [{
        'sequence': n, 'date': iso(_charge_date(c)), 'order_id': str(c.get('charge_id', '')),
        'order_number': None, 'sku': c.get('sku') or '',
        'product_name': c.get('product_name') or 'Subscription Box', 'tier': None, 'match_source': 'charge',
    } for n, c in enumerate(paid, 1)]
    return {'events': events, 'unmapped': [], 'matched': {'charge': len(events)} if events else {},
            'excluded': 0}


def reconstruct_timeline(orders, snapshot, mode='sku_mapping', email=None, charges=None):
    """Ordered installment timeline for one subscriber. Never mutates the orders or charges."""
    if mode not in AUDIT_MODES:
        raise InvariantViolation(f"Unknown audit mode '{mode}'. Allowed: {', '.join(AUDIT_MODES)}")
    if mode == 'order_count':
        return _count_timeline(orders, snapshot, email)
    if mode == 'charge_count':
        return _charge_timeline(charges)
    result = _sku_timeline(orders, snapshot, email)
    if mode == 'hybrid':
        sequences = {e['sequence'] for e in result['events']}
        if len(sequences) == 1:
            # same SKU every month: the mapping cannot tell installments apart
            return _count_timeline(orders, snapshot, email)
        if not sequences and charges:
            charged = _charge_timeline(charges)
            if charged['events']:
                return {**charged, 'unmapped': result['unmapped'], 'excluded': result['excluded']}
    return result


def propose_next(events, series=None):
    if not events:
        return 1
    series = series or {}
    proposed = max(e['sequence'] for e in events) + 1
    total = series.get('total_length')
    if series.get('sequential', True) and total:
        proposed = min(proposed, int(total))
    return proposed


# =============================================================================
# ANOMALY DETECTION
# =============================================================================
def _has_gap(sequences):
    ordered = sorted(set(sequences))
    return any(b - a > 1 for a, b in zip(ordered, ordered[1:]))


def _has_duplicate(events):
    orders_by_seq = defaultdict(set)
    for e in events:
        orders_by_seq[e['sequence']].add(e['order_id'])
    return any(len(o) > 1 for o in orders_by_seq.values())


def _has_time_traveler(events):
    dates_by_seq = defaultdict(list)
    for e in events:
        d = parse_datetime(e['date'])
        if d:
            dates_by_seq[e['sequence']].append(d)
    latest_lower = None
    for seq in sorted(dates_by_seq):
        if latest_lower is not None and latest_lower > min(dates_by_seq[seq]):
            return True
        latest = max(dates_by_seq[seq])
        latest_lower = latest if latest_lower is None else max(latest_lower, latest)
    return False


def _has_unexplained_tier_change(events, upgrades):
    tiered = sorted(((parse_datetime(e['date']) or _MIN_DT, e['sequence'], e['tier'])
                     for e in events if e.get('tier')), key=lambda t: (t[0], t[1]))
    ups = [(parse_datetime(u.get('date')), normalize_sku(u.get('tier'))) for u in upgrades or []]
    prev_date, prev_tier = None, None
    for d, _, tier in tiered:
        if prev_tier is not None and normalize_sku(tier) != normalize_sku(prev_tier):
            covered = any(ud is not None and ut == normalize_sku(tier) and prev_date <= ud <= d
                          for ud, ut in ups)
            if not covered:
                return True
        prev_date, prev_tier = d, tier
    return False


def detect_anomalies(events, context=None):
    """All applicable flags, in FLAG_ORDER."""
    context = context or {}
    flags = []
    if not events:
        flags.append('no_history')
    else:
        if context.get('sequential', True) and _has_gap([e['sequence'] for e in events]):
            flags.append('gap_detected')
        if _has_duplicate(events):
            flags.append('duplicate_box')
        if _has_time_traveler(events):
            flags.append('time_traveler')
        if _has_unexplained_tier_change(events, context.get('upgrades')):
            flags.append('tier_change')
    if int(context.get('active_subscriptions') or 0) > 1:
        flags.append('multiple_subs')
    if context.get('prepaid_total_assumed'):
        flags.append('prepaid_total_assumed')
    return flags


def subscription_series(sub, snapshot=None, series_id=None):
    """Product series a subscription belongs to.

    An explicit series_id wins. A subscription whose SKU or title resolves through
    the alias snapshot belongs to the run's series. Otherwise its SKU or title
    identifies it, so unrelated products never share a series.
    """
    if sub.get('series_id'):
        return str(sub['series_id'])
    if snapshot is not None and any(snapshot.resolve(v) is not None
                                    for v in (sub.get('sku'), sub.get('product_title'))):
        return str(series_id) if series_id else MAPPED_SERIES
    key = normalize_sku(sub.get('sku')) or normalize_sku(sub.get('product_title'))
    return key or 'subscription:' + str(sub.get('subscription_id'))


def build_audit_context(subscriber, series=None, snapshot=None):
    """Lifecycle metadata the detector needs, taken from a modeled subscriber record."""
    series = series or {}
    series_id = series.get('series_id')
    groups = defaultdict(list)
    for s in subscriber.get('subscriptions', []):
        if (s.get('effective_status') or s.get('status')) == 'active':
            groups[subscription_series(s, snapshot, series_id)].append(s)
    all_active = [s for group in groups.values() for s in group]
    if series_id:
        active = groups.get(str(series_id), [])
    else:
        active = max(groups.values(), key=len, default=[])
    return {
        'sequential': series.get('sequential', True),
        'upgrades': subscriber.get('upgrades', []),
        'active_subscriptions': len(active),
        'prepaid_total_assumed': any(s.get('is_prepaid') and s.get('prepaid_total_assumed')
                                     for s in (active if series_id else all_active)),
    }


def audit_subscriber(orders, snapshot, context=None, mode='sku_mapping', series=None, email=None,
                     charges=None):
    series = series or {}
    context = dict(context or {})
    context.setdefault('sequential', series.get('sequential', True))
    timeline = reconstruct_timeline(orders, snapshot, mode, email, charges)
    events = timeline['events']
    flags = detect_anomalies(events, context)
    matched = timeline['matched']
    total = sum(matched.values())
    confidence = round(sum(MATCH_CONFIDENCE[s] * n for s, n in matched.items()) / total, 2) if total else 0.0
    return {
        'status': 'flagged' if flags else 'clean',
        'flag_reasons': flags,
        'detected_sequences': sorted({e['sequence'] for e in events}),
        'sequence_dates': events,
        'proposed_next_box': propose_next(events, series),
        'unmapped_items': timeline['unmapped'],
        'confidence_score': confidence,
        'excluded_items': timeline['excluded'],
        'error': None,
    }


def failed_audit(error):
    """Outcome for a subscriber whose history could not be fetched."""
    return {
        'status': 'flagged', 'flag_reasons': ['no_history'], 'detected_sequences': [],
        'sequence_dates': [], 'proposed_next_box': 1, 'unmapped_items': [],
        'confidence_score': 0.0, 'excluded_items': 0, 'error': str(error),
    }
