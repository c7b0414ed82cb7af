import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Query, Request

from bulk_seo import ledger
from bulk_seo.ai_queue import AIQueue
from bulk_seo.background import BackgroundRunner
from bulk_seo.config import settings
from bulk_seo.db import get_active_job, get_latest_job, get_shop, init_db, request_cancel, upsert_shop
from bulk_seo.ledger import InsufficientBalance
from bulk_seo.openrouter import OpenRouterClient
from bulk_seo.plans import PLANS, PolicyViolation, is_known_plan, resolve_plan_key
from bulk_seo.platform import ShopifyMetafieldClient
from bulk_seo.ratelimit import ShopRateLimiter
from bulk_seo.schemas import (
    AdminGrantRequest,
    AdminShopRequest,
    GenerateApplyBatchRequest,
    GenerateApplyBatchResponse,
    JobCancelRequest,
    JobProgress,
    JobStatusResponse,
    TokenBalanceResponse,
)
from bulk_seo.worker import BatchProduct, JobOrchestrator, recover_interrupted_jobs

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def sweep() -> dict:
    return {
        "recovered_jobs": recover_interrupted_jobs(),
        "swept_reservations": ledger.sweep_orphaned_reservations(settings.reservation_timeout_sec),
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    result = sweep()
    if any(result.values()):
        logger.warning(f"Startup recovery: {result}")
    yield
    await app.state.background.drain()


app = FastAPI(title="Bulk SEO Generator", version=settings.app_version, lifespan=lifespan)
init_db()

app.state.queue = AIQueue()
app.state.background = BackgroundRunner()
app.state.rate_limiter = ShopRateLimiter()
app.state.orchestrator = JobOrchestrator(
    queue=app.state.queue,
    provider=OpenRouterClient(),
    platform=ShopifyMetafieldClient(),
    background=app.state.background,
)


def envelope(data: dict, status: str = "ok", error: dict | None = None) -> dict:
    return {
        "status": status,
        "data": data,
        "meta": {"model_version": settings.app_version, "latency_ms": 0},
        "error": error,
    }


def _require_admin(x_admin_token: Annotated[str | None, Header()] = None) -> None:
    if not settings.admin_api_token:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    if x_admin_token != settings.admin_api_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _job_status(job: dict | None) -> JobStatusResponse:
    if not job:
        return JobStatusResponse(in_progress=False, status="idle")
    return JobStatusResponse(
        in_progress=job["status"] in ("queued", "running"),
        status=job["status"],
        job_id=job["job_id"],
        progress=JobProgress(
            current=int(job["progress_current"]),
            total=int(job["progress_total"]),
            remaining_seconds=job["remaining_seconds"],
        ),
        message=job["message"],
        applied_count=int(job["applied_count"]),
        failed_count=int(job["failed_count"]),
        skipped_count=int(job["skipped_count"]),
        tokens_reserved=int(job["tokens_reserved"]),
        tokens_used=int(job["tokens_used"]),
        failure_reason_code=job.get("failure_reason_code"),
        fail_reasons=job.get("fail_reasons") or [],
        skip_reasons=job.get("skip_reasons") or [],
    )


def _balance(shop: str) -> TokenBalanceResponse:
    balance = ledger.get_or_create(shop)
    return TokenBalanceResponse(
        shop=shop,
        balance=balance.balance,
        total_purchased=balance.total_purchased,
        total_used=balance.total_used,
        pending_reservations=balance.pending_amount,
    )


@app.get("/health")
def health() -> dict:
    return envelope({"service": "bulk-seo"})


@app.get("/version")
def version() -> dict:
    return envelope({"service": "bulk-seo", "version": settings.app_version})


@app.post("/generate-apply-batch")
async def generate_apply_batch(
    payload: GenerateApplyBatchRequest,
    request: Request,
    background_tasks: BackgroundTasks,
) -> dict:
    if not request.app.state.rate_limiter.allow(payload.shop):
        raise HTTPException(status_code=429, detail="Too many batch requests, try again in a minute")

    orchestrator: JobOrchestrator = request.app.state.orchestrator
    products = [
        BatchProduct(
            product_id=p.product_id,
            languages=p.languages,
            existing_languages=p.existing_languages,
            title=p.title,
            description=p.description,
        )
        for p in payload.products
    ]
    try:
        result = await orchestrator.enqueue(payload.shop, products, model=payload.model)
    except PolicyViolation as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except InsufficientBalance as exc:
        raise HTTPException(
            status_code=402,
            detail={
                "error": "Insufficient token balance",
                "tokensRequired": exc.required,
                "tokensAvailable": exc.available,
            },
        ) from exc

    if result.queued:
        background_tasks.add_task(orchestrator.run_job, result.job_id)

    response = GenerateApplyBatchResponse(
        queued=result.queued,
        job_id=result.job_id,
        total_products=result.total_products,
        message=result.message,
    )
    return envelope(response.model_dump(by_alias=True))


@app.get("/job-status")
def job_status(shop: str = Query(...)) -> dict:
    job = get_active_job(shop) or get_latest_job(shop)
    return envelope(_job_status(job).model_dump(by_alias=True))


@app.post("/job-cancel")
def job_cancel(payload: JobCancelRequest) -> dict:
    success = request_cancel(payload.shop)
    if success:
        logger.info(f"Cancel requested for shop: {payload.shop}")
    return envelope({"success": success})


@app.get("/token-balance")
def token_balance(shop: str = Query(...)) -> dict:
    data = _balance(shop).model_dump(by_alias=True)
    data["recentEvents"] = ledger.list_events(shop, limit=20)
    return envelope(data)


@app.post("/admin/tokens/grant")
def admin_grant_tokens(payload: AdminGrantRequest, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    ledger.grant_tokens(
        payload.shop,
        payload.tokens,
        purchased=payload.purchased,
        note=payload.note,
        external_ref=payload.external_ref,
    )
    return envelope(_balance(payload.shop).model_dump(by_alias=True))


@app.post("/admin/shops")
def admin_upsert_shop(payload: AdminShopRequest, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    if payload.plan is not None and not is_known_plan(payload.plan):
        raise HTTPException(status_code=400, detail=f"Unknown plan: {payload.plan}")
    upsert_shop(payload.shop, plan=payload.plan, access_token=payload.access_token)
    plan = PLANS[resolve_plan_key(get_shop(payload.shop)["plan"])]
    return envelope({"shop": payload.shop, "plan": plan["name"], "languageLimit": plan["language_limit"]})


@app.get("/admin/queue-stats")
def admin_queue_stats(request: Request, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    return envelope(request.app.state.queue.get_stats())


@app.post("/admin/sweep")
def admin_sweep(x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    return envelope(sweep())
