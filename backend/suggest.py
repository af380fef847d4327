"""
Classification suggestions for product variations.

Suggesters only propose; nothing is written to the catalog until a human
confirms a category from the review queue.
"""
import json
import logging
import re
from typing import Dict, List, Optional

import httpx

from engine import VARIATION_TYPES, InvariantViolation, apply_classification, new_id, now_iso

logger = logging.getLogger(__name__)

LLM_BATCH_SIZE = 50
DEFAULT_LLM_MODEL = 'gpt-4o-mini'

_IGNORED_WORDS = re.compile(r'\b(test|sample|internal|demo)\b', re.I)
_ADDON_WORDS = re.compile(
    r'gift\s*card|donation|shipping|\bfee\b|t-?shirt|\bshirt\b|hoodie|\bmug\b|sticker|\bpin\b|poster|merch',
    re.I)
_SUBSCRIPTION_WORDS = re.compile(
    r'\bbox\b|month|episode|chapter|issue|installment|subscription|#\s*\d+|\bvol(ume)?\.?\s*\d+', re.I)


def _label(variation):
    parts = [variation.get('product_name') or '', variation.get('variant_title') or '', variation.get('sku') or '']
    return ' '.join(p for p in parts if p)


def _fallback(variation, rationale):
    return {'variation_id': variation['variation_id'], 'category': 'subscription',
            'confidence': 0.5, 'rationale': rationale}


class HeuristicSuggester:
    """Keyword rules over product name, variant and SKU. No I/O."""

    name = 'heuristic'

    async def suggest(self, variations: List[Dict]) -> List[Dict]:
        return [self.suggest_one(v) for v in variations]

    def suggest_one(self, variation):
        text = _label(variation)
        if _IGNORED_WORDS.search(text):
            return {'variation_id': variation['variation_id'], 'category': 'ignored', 'confidence': 0.9,
                    'rationale': 'Looks like a test or internal item'}
        if _ADDON_WORDS.search(text):
            return {'variation_id': variation['variation_id'], 'category': 'addon', 'confidence': 0.8,
                    'rationale': 'Looks like merchandise, a fee or a one-time purchase'}
        if _SUBSCRIPTION_WORDS.search(text):
            return {'variation_id': variation['variation_id'], 'category': 'subscription', 'confidence': 0.8,
                    'rationale': 'Name suggests a numbered recurring installment'}
        return _fallback(variation, 'No rule matched, defaulted to subscription')


class LLMSuggester:
    """OpenAI-compatible chat completions, batches of 50 variations per request."""

    name = 'llm'

    def __init__(self, api_key: str, base_url: str = 'https://api.openai.com/v1', model: str = DEFAULT_LLM_MODEL,
                 client: Optional[httpx.AsyncClient] = None, series_name: Optional[str] = None,
                 tier_names: Optional[List[str]] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.series_name = series_name
        self.tier_names = tier_names or []
        self._client = client

    def _system_prompt(self):
        tiers = (f"The subscription has these tiers: {', '.join(self.tier_names)}. Suggest the best matching tier."
                 if self.tier_names else
                 'If product names show tier patterns (Premium, Basic, Deluxe), suggest a tier name.')
        series = f'The subscription is called "{self.series_name}".' if self.series_name else ''
        return (
            "You are categorizing e-commerce products for a subscription box management system.\n"
            "Categories:\n"
            "1. subscription - recurring items customers receive each period\n"
            "2. addon - one-time purchases: merchandise, gift items, bonus items\n"
            "3. ignored - test orders, internal or discontinued items\n"
            f"{series}\n{tiers}\n"
            "Products with high order counts are more likely subscription items.\n"
            'Respond with a JSON array only: [{"id": "...", "category": "...", '
            '"confidence": 0.0-1.0, "reasoning": "...", "suggested_tier": "..."}]'
        )

    async def _complete(self, client, batch):
        products = [{'id': v['variation_id'], 'product_name': v.get('product_name'),
                     'variant_title': v.get('variant_title'), 'sku': v.get('sku'),
                     'order_count': v.get('order_count', 0)} for v in batch]
        response = await client.post(
            f"{self.base_url}/chat/completions",
            json={
                'model': self.model,
                'messages': [
                    {'role': 'system', 'content': self._system_prompt()},
                    {'role': 'user', 'content': f"Categorize these products:\n{json.dumps(products)}"},
                ],
                'max_tokens': 2000,
                'temperature': 0.2,
            },
            headers={'Authorization': f"Bearer {self.api_key}", 'Content-Type': 'application/json'},
        )
        response.raise_for_status()
        return response.json()['choices'][0]['message']['content'] or ''

    def _parse(self, content, batch):
        match = re.search(r'\[[\s\S]*\]', content)
        if not match:
            logger.warning('Could not parse suggestion response as JSON')
            return [_fallback(v, 'Could not parse AI response') for v in batch]
        try:
            raw = json.loads(match.group(0))
        except json.JSONDecodeError:
            logger.warning('Suggestion response contained malformed JSON')
            return [_fallback(v, 'Could not parse AI response') for v in batch]
        by_id = {str(r.get('id')): r for r in raw if isinstance(r, dict)}
        out = []
        for v in batch:
            r = by_id.get(v['variation_id'])
            if not r or r.get('category') not in VARIATION_TYPES:
                out.append(_fallback(v, 'No usable AI suggestion'))
                continue
            try:
                confidence = max(0.0, min(1.0, float(r.get('confidence', 0.5))))
            except (TypeError, ValueError):
                confidence = 0.5
            s = {'variation_id': v['variation_id'], 'category': r['category'],
                 'confidence': confidence, 'rationale': r.get('reasoning') or ''}
            if r.get('suggested_tier') and r['category'] == 'subscription':
                s['tier'] = r['suggested_tier']
            out.append(s)
        return out

    async def suggest(self, variations: List[Dict]) -> List[Dict]:
        client = self._client or httpx.AsyncClient(timeout=60.0)
        suggestions = []
        try:
            for i in range(0, len(variations), LLM_BATCH_SIZE):
                batch = variations[i:i + LLM_BATCH_SIZE]
                try:
                    content = await self._complete(client, batch)
                except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
                    logger.warning(f"Suggestion request failed, defaulting batch to subscription: {e}")
                    suggestions.extend(_fallback(v, 'AI unavailable, defaulted to subscription') for v in batch)
                    continue
                suggestions.extend(self._parse(content, batch))
        finally:
            if self._client is None:
                await client.aclose()
        return suggestions


async def suggest_classifications(variations, strategy=None):
    """Suggestions for variations no human has classified yet; none without a strategy."""
    pending = [v for v in variations if not v.get('classified_at')]
    if strategy is None or not pending:
        return []
    return await strategy.suggest(pending)


def build_review_queue(suggestions, merchant_id, strategy_name):
    return [{
        'suggestion_id': new_id('SUG'), 'merchant_id': merchant_id,
        'variation_id': s['variation_id'], 'category': s['category'],
        'confidence': s['confidence'], 'rationale': s.get('rationale', ''),
        'tier': s.get('tier'), 'strategy': strategy_name, 'status': 'pending',
        'created_at': now_iso(),
    } for s in suggestions]


def summarize_queue(queue):
    summary = {c: 0 for c in VARIATION_TYPES}
    for entry in queue:
        if entry['status'] == 'pending':
            summary[entry['category']] += 1
    return summary


def confirm_suggestions(queue, variations, category, actor=None):
    """Apply one category's pending suggestions. Returns (changed_variations, confirmed_entries).

    A confirmed variation counts as classified even when the category matches its
    default, so it is not suggested again. Suggested tiers fill empty tiers.
    """
    if category not in VARIATION_TYPES:
        raise InvariantViolation(f"Unknown classification '{category}'")
    entries = [e for e in queue if e['status'] == 'pending' and e['category'] == category]
    at = now_iso()
    changed = apply_classification(variations, [e['variation_id'] for e in entries], category, actor, at)
    changed_ids = {v['variation_id'] for v in changed}
    by_id = {v['variation_id']: v for v in variations}
    for e in entries:
        v = by_id.get(e['variation_id'])
        if v is not None:
            touched = False
            if not v.get('classified_at'):
                v['classified_by'] = actor
                v['classified_at'] = at
                touched = True
            if category == 'subscription' and e.get('tier') and not v.get('tier'):
                v['tier'] = e['tier']
                touched = True
            if touched and v['variation_id'] not in changed_ids:
                changed_ids.add(v['variation_id'])
                changed.append(v)
        e['status'] = 'confirmed'
        e['confirmed_by'] = actor
        e['confirmed_at'] = at
    return changed, entries
