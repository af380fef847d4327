"""
Prepaid Subscription Modeler
Derives prepaid status, installment totals and delivered-count estimates
from a normalized billing-platform subscription record.
Pure functions; "now" is always an explicit parameter.
"""
from calendar import monthrange
from datetime import datetime, timezone

from engine import parse_datetime

# =============================================================================
# CONSTANTS
# =============================================================================
PREPAID_FLAG_NAMES = ('prepaid', 'subscription_type')
PREPAID_TOTAL_NAMES = ('total', 'episodes', 'shipments')
DEFAULT_PREPAID_TOTAL = 12

DAYS_PER_UNIT = {'day': 1.0, 'week': 7.0, 'month': 30.436875}

UNIT_ALIASES = {
    'day': 'day', 'days': 'day', 'daily': 'day',
    'week': 'week', 'weeks': 'week', 'weekly': 'week',
    'month': 'month', 'months': 'month', 'monthly': 'month',
}


# =============================================================================
# CUSTOM PROPERTIES
# =============================================================================
class Properties:
    """Ordered (name, value) string pairs from the billing platform's property bag."""

    __slots__ = ('pairs',)

    def __init__(self, pairs=()):
        self.pairs = tuple((str(n), '' if v is None else str(v)) for n, v in pairs)

    @classmethod
    def from_raw(cls, raw):
        """Accepts [{'name': .., 'value': ..}], [(name, value)] or a plain dict."""
        if not raw:
            return cls()
        if isinstance(raw, Properties):
            return raw
        if isinstance(raw, dict):
            return cls(raw.items())
        pairs = []
        for p in raw:
            if isinstance(p, dict):
                pairs.append((p.get('name', ''), p.get('value', '')))
            else:
                pairs.append((p[0], p[1]))
        return cls(pairs)

    def named(self, *needles):
        """Pairs whose name contains any needle, case-insensitively, in original order."""
        folded = [n.casefold() for n in needles]
        return [(n, v) for n, v in self.pairs if any(f in n.casefold() for f in folded)]

    def any_value_contains(self, names, needle):
        needle = needle.casefold()
        return any(needle in v.casefold() for _, v in self.named(*names))

    def first_int(self, *needles):
        for _, v in self.named(*needles):
            try:
                return int(str(v).strip())
            except ValueError:
                continue
        return None

    def __iter__(self):
        return iter(self.pairs)

    def __len__(self):
        return len(self.pairs)

    def __eq__(self, other):
        return isinstance(other, Properties) and self.pairs == other.pairs

    def __repr__(self):
        return f"Properties({list(self.pairs)!r})"


# =============================================================================
# INTERVALS
# =============================================================================
def normalize_interval(interval):
    """Returns (unit, frequency) or None when the interval is missing or unusable."""
    if not interval:
        return None
    unit = UNIT_ALIASES.get(str(interval.get('unit', '')).lower().strip())
    try:
        freq = int(interval.get('frequency') or 0)
    except (TypeError, ValueError):
        return None
    if not unit or freq <= 0:
        return None
    return unit, freq


def compare_intervals(a, b):
    """Ratio a/b. Same-unit intervals divide exactly; mixed units go through days."""
    if a[0] == b[0]:
        return a[1] / b[1]
    return (a[1] * DAYS_PER_UNIT[a[0]]) / (b[1] * DAYS_PER_UNIT[b[0]])


def _intervals(sub):
    return normalize_interval(sub.get('charge_interval')), normalize_interval(sub.get('ship_interval'))


# =============================================================================
# PREPAID DETECTION
# =============================================================================
def is_prepaid(sub):
    props = Properties.from_raw(sub.get('properties'))
    if props.any_value_contains(PREPAID_FLAG_NAMES, 'prepaid'):
        return True
    charge, ship = _intervals(sub)
    if charge and ship:
        return compare_intervals(charge, ship) > 1
    return False


def prepaid_total_source(sub):
    """Returns (total, source) where source is 'property', 'interval' or 'default'."""
    props = Properties.from_raw(sub.get('properties'))
    explicit = props.first_int(*PREPAID_TOTAL_NAMES)
    if explicit is not None and explicit > 0:
        return explicit, 'property'
    charge, ship = _intervals(sub)
    if charge and ship:
        ratio = compare_intervals(charge, ship)
        if ratio > 1:
            return int(ratio), 'interval'
    return DEFAULT_PREPAID_TOTAL, 'default'


def prepaid_total(sub):
    return prepaid_total_source(sub)[0]


# =============================================================================
# DELIVERY ESTIMATION
# =============================================================================
def _as_utc(dt):
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def months_between(start, end):
    """Whole calendar months from start to end; anniversaries clamp to month end."""
    months = (end.year - start.year) * 12 + (end.month - start.month)
    anniversary_day = min(start.day, monthrange(end.year, end.month)[1])
    if (end.day, end.timetz()) < (anniversary_day, start.timetz()):
        months -= 1
    return max(months, 0)


def elapsed_intervals(start, end, interval):
    unit, freq = interval
    if end <= start:
        return 0
    if unit == 'month':
        return months_between(start, end) // freq
    days = (end - start).days
    if unit == 'week':
        return (days // 7) // freq
    return days // freq


def estimate_delivered(sub, now):
    """Estimated installments shipped so far; at least 1 since the first ships at creation."""
    created = parse_datetime(sub.get('created_at'))
    ship = normalize_interval(sub.get('ship_interval'))
    if created is None or ship is None:
        return 1
    end = _as_utc(now)
    if sub.get('status') == 'cancelled':
        cancelled = parse_datetime(sub.get('cancelled_at'))
        if cancelled is not None and _as_utc(cancelled) < end:
            end = _as_utc(cancelled)
    return max(1, elapsed_intervals(_as_utc(created), end, ship))


def prepaid_remaining(total, delivered):
    if total is None or delivered is None:
        return None
    return max(0, total - delivered)


# =============================================================================
# LIFECYCLE
# =============================================================================
def effective_status(sub, remaining=None):
    status = str(sub.get('status', '')).lower()
    if status == 'cancelled':
        return 'cancelled'
    if status == 'expired':
        return 'active' if remaining is not None and remaining > 0 else 'expired'
    if status == 'paused':
        return 'paused'
    return 'active'


def model_subscription(sub, now, charge_count=None):
    """Enriches a subscription with its prepaid model.

    A live successful-charge count, when known, replaces the time-based estimate.
    """
    modeled = dict(sub)
    prepaid = is_prepaid(sub)
    modeled['is_prepaid'] = prepaid
    if prepaid:
        total, source = prepaid_total_source(sub)
        if charge_count is not None:
            delivered, delivered_source = max(int(charge_count), 0), 'charges'
        else:
            delivered, delivered_source = estimate_delivered(sub, now), 'estimate'
        remaining = prepaid_remaining(total, delivered)
        modeled.update({
            'prepaid_total': total, 'prepaid_total_source': source,
            'prepaid_total_assumed': source == 'default',
            'prepaid_delivered': delivered, 'prepaid_delivered_source': delivered_source,
            'prepaid_remaining': remaining,
        })
    else:
        remaining = None
        modeled.update({
            'prepaid_total': None, 'prepaid_total_source': None, 'prepaid_total_assumed': False,
            'prepaid_delivered': None, 'prepaid_delivered_source': None, 'prepaid_remaining': None,
        })
    modeled['effective_status'] = effective_status(sub, remaining)
    modeled['modeled_at'] = _as_utc(now).isoformat()
    return modeled


def apply_charge_success(modeled, charge_count):
    """Live charge events supersede the import-time estimate from then on.

    A prepaid subscription with nothing left to ship becomes expired.
    """
    if not modeled.get('is_prepaid'):
        return modeled
    updated = dict(modeled)
    updated['prepaid_delivered'] = max(int(charge_count), 0)
    updated['prepaid_delivered_source'] = 'charges'
    updated['prepaid_remaining'] = prepaid_remaining(updated.get('prepaid_total'), updated['prepaid_delivered'])
    if updated['prepaid_remaining'] == 0 and str(updated.get('status', '')).lower() != 'cancelled':
        updated['status'] = 'expired'
    if str(updated.get('status', '')).lower() == 'expired':
        updated['effective_status'] = effective_status(updated, updated['prepaid_remaining'])
    return updated


def utcnow():
    return datetime.now(timezone.utc)
