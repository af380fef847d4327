from fastapi import FastAPI, APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import StreamingResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import io
import csv
import logging
from pathlib import Path
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime

from adapters import FetchError, RechargeClient, ShopifyClient, StaticOrderProvider
from engine import (InvariantViolation, AUDIT_STATUSES, FLAG_LABELS, explain_flags, make_alias, make_pattern,
                    apply_classification, assign_sequence, remove_alias, merge_aliases,
                    scan_variations, unknown_sku_queue)
from orchestrator import (MigrationOrchestrator, cancel_run, import_subscribers, recalculate_prepaid,
                          run_progress, start_run)
from resolution import resolve_entry, review_queue, skip_entry
from store import Store
from suggest import (HeuristicSuggester, LLMSuggester, build_review_queue, confirm_suggestions,
                     suggest_classifications, summarize_queue)
from synthetic import generate_synthetic

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

mongo_url = os.environ['MONGO_URL']
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ['DB_NAME']]
store = Store(db)

AUDIT_BATCH_SIZE = int(os.environ.get('AUDIT_BATCH_SIZE', '5'))
AUDIT_BATCH_DELAY = float(os.environ.get('AUDIT_BATCH_DELAY', '0.2'))
RECHARGE_API_KEY = os.environ.get('RECHARGE_API_KEY')
SHOPIFY_SHOP = os.environ.get('SHOPIFY_SHOP')
SHOPIFY_ACCESS_TOKEN = os.environ.get('SHOPIFY_ACCESS_TOKEN')
OPENAI_API_KEY = os.environ.get('OPENAI_API_KEY')
OPENAI_BASE_URL = os.environ.get('OPENAI_BASE_URL', 'https://api.openai.com/v1')
OPENAI_MODEL = os.environ.get('OPENAI_MODEL', 'gpt-4o-mini')

app = FastAPI(title="Sequence Audit API")
api = APIRouter(prefix="/api")

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def get_store():
    return store


# =============================================================================
# REQUEST MODELS
# =============================================================================
class ScanRequest(BaseModel):
    since: Optional[str] = None

class ClassifyRequest(BaseModel):
    variation_ids: List[str]
    category: str
    actor: Optional[str] = None

class AssignRequest(BaseModel):
    variation_ids: List[str]
    sequence: Optional[int] = None
    tier: Optional[str] = None
    actor: Optional[str] = None

class ConfirmRequest(BaseModel):
    category: str
    actor: Optional[str] = None

class AliasRequest(BaseModel):
    sku: str
    sequence: int
    label: Optional[str] = None
    tier: Optional[str] = None

class MergeRequest(BaseModel):
    source_id: str
    target_id: str

class PatternRequest(BaseModel):
    pattern: str
    pattern_type: str = 'contains'
    sequence: int = 0

class RunRequest(BaseModel):
    mode: str = 'sku_mapping'
    series_id: Optional[str] = None
    sequential: bool = True
    total_length: Optional[int] = None
    subscriber_ids: Optional[List[str]] = None

class ResolveRequest(BaseModel):
    next_box: int
    note: Optional[str] = None
    actor: str = 'operator'

class SkipRequest(BaseModel):
    reason: str = Field(default='Skipped by user')
    actor: str = 'operator'


# =============================================================================
# HELPERS
# =============================================================================
async def order_provider(store: Store, merchant_id: str):
    """Stored (replayed or synthetic) history first, then the live order platform."""
    history = await store.load_order_history(merchant_id)
    if history:
        return StaticOrderProvider(history)
    if SHOPIFY_SHOP and SHOPIFY_ACCESS_TOKEN:
        return ShopifyClient(SHOPIFY_SHOP, SHOPIFY_ACCESS_TOKEN)
    return None

def suggestion_strategy():
    if OPENAI_API_KEY:
        return LLMSuggester(OPENAI_API_KEY, base_url=OPENAI_BASE_URL, model=OPENAI_MODEL)
    return HeuristicSuggester()


# =============================================================================
# CATALOG ENDPOINTS
# =============================================================================
@api.post("/merchants/{merchant_id}/catalog/scan")
async def scan_catalog(merchant_id: str, body: ScanRequest = ScanRequest(), store: Store = Depends(get_store)):
    orders = await order_provider(store, merchant_id)
    if orders is None:
        return {"error": "No order history source configured"}
    try:
        scanned = []
        async for page in orders.iter_order_pages(body.since):
            scanned.extend(page)
    except FetchError as e:
        logger.error(f"Catalog scan failed for {merchant_id}: {e}", exc_info=True)
        return {"error": str(e)}
    finally:
        await orders.aclose()
    existing = await store.list_variations(merchant_id)
    variations = scan_variations(scanned, existing, merchant_id)
    await store.save_variations(variations)
    return {"orders_scanned": len(scanned), "variations": len(variations),
            "new_variations": len(variations) - len(existing)}

@api.get("/merchants/{merchant_id}/variations")
async def list_variations(merchant_id: str, variation_type: Optional[str] = None, store: Store = Depends(get_store)):
    return await store.list_variations(merchant_id, variation_type)

@api.post("/merchants/{merchant_id}/variations/classify")
async def classify_variations(merchant_id: str, body: ClassifyRequest, store: Store = Depends(get_store)):
    variations = await store.list_variations(merchant_id)
    try:
        changed = apply_classification(variations, body.variation_ids, body.category, body.actor)
    except InvariantViolation as e:
        return {"error": str(e)}
    await store.save_variations(changed)
    return {"ok": True, "changed": len(changed)}

@api.post("/merchants/{merchant_id}/variations/assign")
async def assign_variations(merchant_id: str, body: AssignRequest, store: Store = Depends(get_store)):
    variations = await store.list_variations(merchant_id)
    try:
        changed = assign_sequence(variations, body.variation_ids, body.sequence, body.tier, body.actor)
    except InvariantViolation as e:
        return {"error": str(e)}
    await store.save_variations(changed)
    return {"ok": True, "changed": len(changed)}

@api.post("/merchants/{merchant_id}/suggestions")
async def create_suggestions(merchant_id: str, store: Store = Depends(get_store)):
    strategy = suggestion_strategy()
    variations = await store.list_variations(merchant_id)
    suggestions = await suggest_classifications(variations, strategy)
    queue = build_review_queue(suggestions, merchant_id, strategy.name)
    await store.replace_pending_suggestions(merchant_id, queue)
    return {"strategy": strategy.name, "summary": summarize_queue(queue), "suggestions": queue}

@api.get("/merchants/{merchant_id}/suggestions")
async def list_suggestions(merchant_id: str, status: Optional[str] = 'pending', store: Store = Depends(get_store)):
    queue = await store.list_suggestions(merchant_id, status)
    return {"summary": summarize_queue(queue), "suggestions": queue}

@api.post("/merchants/{merchant_id}/suggestions/confirm")
async def confirm_suggestion_category(merchant_id: str, body: ConfirmRequest, store: Store = Depends(get_store)):
    queue = await store.list_suggestions(merchant_id, 'pending')
    variations = await store.list_variations(merchant_id)
    try:
        changed, confirmed = confirm_suggestions(queue, variations, body.category, body.actor)
    except InvariantViolation as e:
        return {"error": str(e)}
    await store.save_variations(changed)
    await store.save_suggestions(confirmed)
    return {"ok": True, "confirmed": len(confirmed), "changed": len(changed)}


# =============================================================================
# ALIAS & PATTERN ENDPOINTS
# =============================================================================
@api.get("/merchants/{merchant_id}/aliases")
async def list_aliases(merchant_id: str, store: Store = Depends(get_store)):
    return await store.list_aliases(merchant_id)

@api.post("/merchants/{merchant_id}/aliases")
async def save_alias(merchant_id: str, body: AliasRequest, store: Store = Depends(get_store)):
    try:
        alias = make_alias(merchant_id, body.sku, body.sequence, body.label, body.tier)
    except InvariantViolation as e:
        return {"error": str(e)}
    saved = await store.save_alias(alias)
    await store.mark_unmapped_resolved(merchant_id, body.sku, body.sequence)
    return saved

@api.delete("/merchants/{merchant_id}/aliases/{alias_id}")
async def delete_alias(merchant_id: str, alias_id: str, confirm: bool = False, store: Store = Depends(get_store)):
    aliases = await store.list_aliases(merchant_id)
    variations = await store.list_variations(merchant_id)
    try:
        _, demoted = remove_alias(aliases, variations, alias_id, confirm)
    except InvariantViolation as e:
        return {"error": str(e)}
    await store.delete_alias(alias_id)
    await store.save_variations(demoted)
    return {"ok": True, "demoted_variations": len(demoted)}

@api.post("/merchants/{merchant_id}/aliases/merge")
async def merge_alias(merchant_id: str, body: MergeRequest, store: Store = Depends(get_store)):
    aliases = await store.list_aliases(merchant_id)
    variations = await store.list_variations(merchant_id)
    try:
        _, repointed = merge_aliases(aliases, variations, body.source_id, body.target_id)
    except InvariantViolation as e:
        return {"error": str(e)}
    await store.delete_alias(body.source_id)
    await store.save_variations(repointed)
    return {"ok": True, "repointed_variations": len(repointed)}

@api.get("/merchants/{merchant_id}/patterns")
async def list_patterns(merchant_id: str, store: Store = Depends(get_store)):
    return await store.list_patterns(merchant_id)

@api.post("/merchants/{merchant_id}/patterns")
async def create_pattern(merchant_id: str, body: PatternRequest, store: Store = Depends(get_store)):
    try:
        pattern = make_pattern(merchant_id, body.pattern, body.pattern_type, body.sequence)
    except InvariantViolation as e:
        return {"error": str(e)}
    await store.save_pattern(pattern)
    return pattern

@api.delete("/merchants/{merchant_id}/patterns/{pattern_id}")
async def delete_pattern(merchant_id: str, pattern_id: str, store: Store = Depends(get_store)):
    if not await store.delete_pattern(pattern_id):
        return {"error": "Pattern not found"}
    return {"ok": True}

@api.get("/merchants/{merchant_id}/unknown-skus")
async def unknown_skus(merchant_id: str, store: Store = Depends(get_store)):
    return unknown_sku_queue(await store.list_unmapped(merchant_id))


# =============================================================================
# SUBSCRIBER ENDPOINTS
# =============================================================================
@api.post("/merchants/{merchant_id}/subscribers/import")
async def import_from_billing(merchant_id: str, store: Store = Depends(get_store)):
    if not RECHARGE_API_KEY:
        return {"error": "Billing platform is not configured"}
    try:
        async with RechargeClient(RECHARGE_API_KEY) as billing:
            return await import_subscribers(store, merchant_id, billing)
    except FetchError as e:
        logger.error(f"Subscriber import failed for {merchant_id}: {e}", exc_info=True)
        return {"error": str(e)}

@api.get("/merchants/{merchant_id}/subscribers")
async def list_subscribers(merchant_id: str, migration_status: Optional[str] = None,
                           store: Store = Depends(get_store)):
    return await store.list_subscribers(merchant_id, migration_status)

@api.get("/subscribers/{subscriber_id}")
async def get_subscriber(subscriber_id: str, store: Store = Depends(get_store)):
    subscriber = await store.get_subscriber(subscriber_id)
    if not subscriber:
        return {"error": "Subscriber not found"}
    return {"subscriber": subscriber, "state": await store.get_state(subscriber_id)}

@api.post("/subscribers/{subscriber_id}/recalculate")
async def recalculate(subscriber_id: str, store: Store = Depends(get_store)):
    """Replace delivered-count estimates with live successful-charge counts."""
    if not await store.get_subscriber(subscriber_id):
        return {"error": "Subscriber not found"}
    if not RECHARGE_API_KEY:
        return {"error": "Billing platform is not configured"}
    try:
        async with RechargeClient(RECHARGE_API_KEY) as billing:
            subscriber, state = await recalculate_prepaid(store, subscriber_id, billing)
    except (FetchError, InvariantViolation) as e:
        return {"error": str(e)}
    return {"subscriber": subscriber, "state": state}


# =============================================================================
# MIGRATION RUNS
# =============================================================================
async def run_audit(store: Store, run_id: str, orders, charges=None):
    try:
        orchestrator = MigrationOrchestrator(store, orders, AUDIT_BATCH_SIZE, AUDIT_BATCH_DELAY, charges)
        run = await orchestrator.execute(run_id)
        logger.info(f"Run {run_id} finished: {run['status']} "
                    f"({run['clean_count']} clean, {run['flagged_count']} flagged)")
    except Exception as e:
        logger.error(f"Audit run {run_id} failed: {e}", exc_info=True)
        await store.update_run(run_id, {'status': 'failed', 'error': str(e)})
    finally:
        await orders.aclose()
        if charges is not None:
            await charges.aclose()


@api.post("/merchants/{merchant_id}/runs")
async def create_run(merchant_id: str, body: RunRequest, background_tasks: BackgroundTasks,
                     store: Store = Depends(get_store)):
    if body.mode == 'charge_count' and not RECHARGE_API_KEY:
        return {"error": "Charge count audits need the billing platform configured"}
    orders = await order_provider(store, merchant_id)
    if orders is None:
        return {"error": "No order history source configured"}
    series = {'sequential': body.sequential, 'total_length': body.total_length}
    if body.series_id:
        series['series_id'] = body.series_id
    try:
        run = await start_run(store, merchant_id, series, body.mode, body.subscriber_ids)
    except InvariantViolation as e:
        await orders.aclose()
        return {"error": str(e)}
    charges = None
    if RECHARGE_API_KEY and run['mode'] in ('charge_count', 'hybrid'):
        charges = RechargeClient(RECHARGE_API_KEY)
    background_tasks.add_task(run_audit, store, run['run_id'], orders, charges)
    return {"ok": True, "run_id": run['run_id'], "status": run['status'],
            "total_subscribers": run['total_subscribers']}

@api.get("/merchants/{merchant_id}/runs")
async def list_runs(merchant_id: str, store: Store = Depends(get_store)):
    return [{**r, 'progress': run_progress(r)} for r in await store.list_runs(merchant_id)]

@api.get("/runs/{run_id}")
async def get_run(run_id: str, store: Store = Depends(get_store)):
    run = await store.get_run(run_id)
    if not run:
        return {"error": "Run not found"}
    return {**run, 'progress': run_progress(run)}

@api.post("/runs/{run_id}/cancel")
async def cancel(run_id: str, store: Store = Depends(get_store)):
    try:
        run = await cancel_run(store, run_id)
    except InvariantViolation as e:
        return {"error": str(e)}
    return {"ok": True, "cancel_requested": run['cancel_requested']}


# =============================================================================
# REVIEW & RESOLUTION
# =============================================================================
@api.get("/merchants/{merchant_id}/audit-logs")
async def list_audit_logs(merchant_id: str, status: Optional[str] = Query(None),
                          run_id: Optional[str] = None, store: Store = Depends(get_store)):
    if status and status not in AUDIT_STATUSES:
        return {"error": f"Unknown status. Allowed: {', '.join(AUDIT_STATUSES)}"}
    if status:
        return await review_queue(store, merchant_id, status, run_id)
    return await store.list_audit_logs(merchant_id, run_id=run_id)

@api.get("/audit-logs/{audit_log_id}")
async def get_audit_log(audit_log_id: str, store: Store = Depends(get_store)):
    entry = await store.get_audit_log(audit_log_id)
    if not entry:
        return {"error": "Audit log entry not found"}
    return {**entry, 'explanation': explain_flags(entry['flag_reasons'])}

@api.post("/audit-logs/{audit_log_id}/resolve")
async def resolve(audit_log_id: str, body: ResolveRequest, store: Store = Depends(get_store)):
    try:
        entry, state = await resolve_entry(store, audit_log_id, body.next_box, body.actor, body.note)
    except InvariantViolation as e:
        return {"error": str(e)}
    return {"ok": True, "entry": entry, "state": state}

@api.post("/audit-logs/{audit_log_id}/skip")
async def skip(audit_log_id: str, body: SkipRequest, store: Store = Depends(get_store)):
    try:
        entry = await skip_entry(store, audit_log_id, body.reason, body.actor)
    except InvariantViolation as e:
        return {"error": str(e)}
    return {"ok": True, "entry": entry}


# =============================================================================
# EXPORT
# =============================================================================
@api.get("/merchants/{merchant_id}/export/audit-logs")
async def export_audit_logs(merchant_id: str, status: Optional[str] = None, store: Store = Depends(get_store)):
    entries = await store.list_audit_logs(merchant_id, status=status)
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(['audit_log_id', 'run_id', 'subscriber_id', 'email', 'status', 'flags',
                     'detected_sequences', 'proposed_next_box', 'resolved_next_box', 'override',
                     'confidence_score', 'unmapped_count', 'resolved_by', 'resolved_at',
                     'resolution_note', 'error'])
    for e in entries:
        writer.writerow([e['audit_log_id'], e['run_id'], e['subscriber_id'], e.get('email', ''), e['status'],
                         '|'.join(e['flag_reasons']), ' '.join(str(s) for s in e['detected_sequences']),
                         e['proposed_next_box'], e.get('resolved_next_box') or '',
                         'Yes' if e.get('override') else 'No', e.get('confidence_score', ''),
                         e.get('unmapped_count', 0), e.get('resolved_by') or '', e.get('resolved_at') or '',
                         e.get('resolution_note') or '', e.get('error') or ''])

    return StreamingResponse(io.BytesIO(output.getvalue().encode()),
                             media_type='text/csv',
                             headers={'Content-Disposition': f'attachment; filename=Audit_Log_{merchant_id}_{datetime.now().strftime("%Y-%m-%d")}.csv'})

@api.get("/runs/{run_id}/report")
async def export_run_report(run_id: str, store: Store = Depends(get_store)):
    from reportlab.lib.pagesizes import A4
    from reportlab.lib import colors
    from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table as RLTable, TableStyle
    from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle

    run = await store.get_run(run_id)
    if not run:
        return {"error": "Run not found"}
    entries = await store.list_audit_logs(run['merchant_id'], run_id=run_id)

    buf = io.BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=A4)
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle('Title', parent=styles['Title'], fontSize=20, spaceAfter=20)
    header_style = TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), colors.Color(0.06, 0.09, 0.16)),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
        ('GRID', (0, 0), (-1, -1), 0.5, colors.grey),
        ('FONTSIZE', (0, 0), (-1, -1), 9),
    ])
    elements = []

    elements.append(Paragraph("Subscription Sequence Audit - Run Report", title_style))
    elements.append(Paragraph(f"Run: {run_id} ({run['mode']})", styles['Normal']))
    elements.append(Paragraph(f"Status: {run['status']}", styles['Normal']))
    elements.append(Paragraph(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M')}", styles['Normal']))
    elements.append(Spacer(1, 20))

    progress = run_progress(run)
    summary = [['Metric', 'Value'],
               ['Subscribers', str(run['total_subscribers'])],
               ['Processed', f"{run['processed_subscribers']} ({progress['percent']}%)"],
               ['Clean', str(run['clean_count'])],
               ['Flagged', str(run['flagged_count'])],
               ['Fetch errors', str(run.get('error_count', 0))],
               ['Unmapped items', str(run.get('unmapped_count', 0))]]
    t = RLTable(summary, colWidths=[200, 200])
    t.setStyle(header_style)
    elements.append(t)
    elements.append(Spacer(1, 15))

    counts = {f: 0 for f in FLAG_LABELS}
    for e in entries:
        for f in e['flag_reasons']:
            counts[f] = counts.get(f, 0) + 1
    elements.append(Paragraph("<b>Flags</b>", styles['Heading2']))
    flag_rows = [['Flag', 'Subscribers']] + [[FLAG_LABELS[f], str(n)] for f, n in counts.items() if n]
    t2 = RLTable(flag_rows, colWidths=[250, 150])
    t2.setStyle(header_style)
    elements.append(t2)
    elements.append(Spacer(1, 15))

    flagged = [e for e in entries if e['status'] != 'clean']
    if flagged:
        elements.append(Paragraph("<b>Needs Attention</b>", styles['Heading2']))
        rows = [['Email', 'Status', 'Flags', 'Proposed', 'Resolved']]
        for e in flagged:
            rows.append([e.get('email', ''), e['status'], ', '.join(e['flag_reasons']),
                         str(e['proposed_next_box']), str(e.get('resolved_next_box') or '')])
        t3 = RLTable(rows, colWidths=[150, 60, 160, 55, 55])
        t3.setStyle(header_style)
        elements.append(t3)
        elements.append(Spacer(1, 20))

    elements.append(Paragraph("Proposals are deterministic and rule-based; flagged cases require human review.", styles['Italic']))

    doc.build(elements)
    buf.seek(0)
    return StreamingResponse(buf, media_type='application/pdf',
                             headers={'Content-Disposition': f'attachment; filename=Audit_Run_{run_id}_{datetime.now().strftime("%Y-%m-%d")}.pdf'})


# =============================================================================
# SYNTHETIC DATA
# =============================================================================
@api.post("/synthetic")
async def seed_synthetic_merchant(merchant_id: str = 'demo-merchant', count: int = 37,
                                  store: Store = Depends(get_store)):
    try:
        data = generate_synthetic(count=count, merchant_id=merchant_id)
        for alias in data['aliases']:
            await store.save_alias(alias)
        for pattern in data['patterns']:
            await store.save_pattern(pattern)
        await store.save_variations(data['variations'])
        for subscriber in data['subscribers']:
            await store.save_subscriber(subscriber)
        await store.save_order_history(merchant_id, data['orders_by_customer'])
        return {"merchant_id": merchant_id, "metadata": data['metadata']}
    except Exception as e:
        logger.error(f"Synthetic generation failed: {e}", exc_info=True)
        return {"error": str(e)}


# =============================================================================
# HEALTH
# =============================================================================
@api.get("/")
async def root():
    return {"message": "Sequence Audit API v1.0", "status": "running"}


# =============================================================================
# APP CONFIG
# =============================================================================
app.include_router(api)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
