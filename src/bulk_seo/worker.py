import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from uuid import uuid4

from bulk_seo import db, ledger, plans
from bulk_seo.ai_queue import AIQueue, QueueTimeout
from bulk_seo.background import BackgroundRunner, notify_job_finished
from bulk_seo.config import settings
from bulk_seo.ledger import InsufficientBalance, ReservationSettled
from bulk_seo.openrouter import InvalidResponse, OpenRouterClient, ProviderError, ProviderTimeoutError
from bulk_seo.plans import PolicyViolation
from bulk_seo.platform import ApplyFailure, PlatformClient

logger = logging.getLogger(__name__)

FEATURE = "bulk-generate"


class JobCancelled(RuntimeError):
    pass


def _failure_code(exc: BaseException) -> str:
    if isinstance(exc, InsufficientBalance):
        return "INSUFFICIENT_BALANCE"
    if isinstance(exc, PolicyViolation):
        return "POLICY_VIOLATION"
    if isinstance(exc, InvalidResponse):
        return "INVALID_RESPONSE"
    if isinstance(exc, (ProviderTimeoutError, QueueTimeout)):
        return "PROVIDER_TIMEOUT"
    if isinstance(exc, ProviderError):
        return "PROVIDER_ERROR"
    if isinstance(exc, ApplyFailure):
        return "APPLY_FAILURE"
    if isinstance(exc, JobCancelled):
        return "CANCELLED"
    if isinstance(exc, asyncio.CancelledError):
        return "INTERRUPTED"
    return "UNKNOWN_ERROR"


def languages_to_generate(languages: list[str], existing_languages: list[str]) -> list[str]:
    existing = {lang.lower() for lang in existing_languages}
    out: list[str] = []
    for lang in languages:
        key = lang.lower()
        if key in existing or key in {o.lower() for o in out}:
            continue
        out.append(lang)
    return out


@dataclass
class BatchProduct:
    product_id: str
    languages: list[str]
    existing_languages: list[str] = field(default_factory=list)
    title: str | None = None
    description: str | None = None


@dataclass
class EnqueueResult:
    queued: bool
    job_id: str | None
    total_products: int
    message: str
    tokens_reserved: int = 0


@dataclass
class _RunState:
    job_id: str
    shop: str
    model: str
    total: int
    started: float
    current: int = 0
    applied: int = 0
    failed: int = 0
    skipped: int = 0
    tokens_used: int = 0
    units_started: int = 0
    cancelled: bool = False
    fail_reasons: list[str] = field(default_factory=list)
    skip_reasons: list[str] = field(default_factory=list)


def count_units(products: list[BatchProduct], plan: str | None) -> tuple[int, int]:
    """(progress units, billable units). A skipped product is one progress unit."""
    total = billable = 0
    for product in products:
        todo = languages_to_generate(product.languages, product.existing_languages)
        if not todo:
            total += 1
            continue
        total += len(todo)
        try:
            plans.check_language_limit(plan, product.existing_languages, todo)
        except PolicyViolation:
            continue
        billable += len(todo)
    return total, billable


class JobOrchestrator:
    def __init__(
        self,
        queue: AIQueue,
        provider: OpenRouterClient,
        platform: PlatformClient,
        background: BackgroundRunner | None = None,
        unit_concurrency: int | None = None,
        clock=time.monotonic,
    ) -> None:
        self.queue = queue
        self.provider = provider
        self.platform = platform
        self.background = background
        self.unit_concurrency = unit_concurrency or settings.job_unit_concurrency
        self.clock = clock

    async def enqueue(self, shop: str, products: list[BatchProduct], model: str | None = None) -> EnqueueResult:
        """Persist a job and reserve its token estimate.

        Raises PolicyViolation for a model the plan does not allow and
        InsufficientBalance when the estimate cannot be reserved; the job row is
        then left in `failed`.
        """
        if not products:
            raise ValueError("products must not be empty")
        model = model or settings.default_model
        shop_record = db.get_shop(shop)
        plan = shop_record["plan"] if shop_record else None
        plans.check_model_allowed(plan, model)

        total_units, billable_units = count_units(products, plan)
        job_id = str(uuid4())
        rows = [
            {
                "product_id": p.product_id,
                "languages": p.languages,
                "existing_languages": p.existing_languages,
                "title": p.title,
                "description": p.description,
            }
            for p in products
        ]
        if not db.create_job(job_id, shop, model, rows, total_units):
            active = db.get_active_job(shop)
            logger.info(f"Job already active for shop: {shop}")
            return EnqueueResult(
                queued=False,
                job_id=active["job_id"] if active else None,
                total_products=len(products),
                message="Job already in progress",
            )

        amount = billable_units * plans.estimate_unit_tokens(FEATURE)
        if amount:
            try:
                reservation = ledger.reserve(shop, amount, FEATURE, job_id=job_id)
            except Exception as exc:
                # the row must not stay queued without a runner
                insufficient = isinstance(exc, InsufficientBalance)
                db.update_job(
                    job_id,
                    status="failed",
                    error=str(exc),
                    failure_reason_code=_failure_code(exc),
                    message="Insufficient token balance" if insufficient else f"Reservation failed: {exc}",
                )
                if not insufficient:
                    logger.exception(f"Reservation failed for job {job_id} ({shop})")
                raise
            db.update_job(job_id, reservation_id=reservation.id, tokens_reserved=amount)

        logger.info(f"Job {job_id} queued for {shop}: {len(products)} products, {total_units} units, {amount} tokens reserved")
        return EnqueueResult(
            queued=True,
            job_id=job_id,
            total_products=len(products),
            message=f"Queued ({len(products)} products)",
            tokens_reserved=amount,
        )

    async def run_job(self, job_id: str) -> dict | None:
        job = db.get_job(job_id)
        if not job:
            return None
        if not db.claim_job(job_id):
            logger.warning(f"Job {job_id} is {job['status']}, not starting it")
            return job

        state = _RunState(
            job_id=job_id,
            shop=job["shop"],
            model=job["model"],
            total=int(job["progress_total"]),
            started=self.clock(),
        )
        logger.info(f"Processing job {job_id} for shop: {state.shop} ({state.total} units)")
        try:
            if self._cancel_requested(state):
                raise JobCancelled("cancelled_before_start")
            shop_record = db.get_shop(state.shop)
            plan = shop_record["plan"] if shop_record else None
            await self._process(state, db.list_job_products(job_id), plan)
            if state.cancelled:
                raise JobCancelled(f"cancelled_after_{state.current}_units")
        except JobCancelled as exc:
            logger.info(f"Job {job_id} cancelled for shop: {state.shop} after {state.current}/{state.total} units")
            self._settle_reservation(job, state, note=str(exc))
            self._finish(state, "cancelled", f"Cancelled after {state.current}/{state.total} units")
        except asyncio.CancelledError as exc:
            self._settle_reservation(job, state, note="interrupted")
            self._finish(state, "failed", "Interrupted", error="interrupted", code=_failure_code(exc))
            raise
        except Exception as exc:
            logger.exception(f"Job {job_id} failed for shop: {state.shop}")
            self._settle_reservation(job, state, note=f"failed: {exc}")
            self._finish(state, "failed", f"Failed: {exc}", error=str(exc), code=_failure_code(exc))
        else:
            self._settle_reservation(job, state, note="completed")
            self._finish(state, "completed", self._summary(state))

        final = db.get_job(job_id)
        duration = self.clock() - state.started
        if self.background and final and duration >= settings.notify_min_duration_sec:
            self.background.spawn(notify_job_finished(final, duration), name=f"notify-{job_id}")
        return final

    async def _process(self, state: _RunState, products: list[dict], plan: str | None) -> None:
        slots = asyncio.Semaphore(self.unit_concurrency)
        inflight: list[asyncio.Task] = []
        try:
            for product in products:
                await slots.acquire()
                if self._cancel_requested(state):
                    slots.release()
                    break
                inflight.append(asyncio.create_task(self._run_product(state, product, plan, slots)))
        finally:
            results = await asyncio.gather(*inflight, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _run_product(self, state: _RunState, product: dict, plan: str | None, slots: asyncio.Semaphore) -> None:
        try:
            pos = product["position"]
            pid = product["product_id"]
            todo = languages_to_generate(product["languages"], product["existing_languages"])
            if not todo:
                self._transition(state, pos, state="skipped")
                state.skipped += 1
                state.skip_reasons.append(f"{pid}: all languages already optimized")
                self._advance(state, 1)
                return

            try:
                plans.check_language_limit(plan, product["existing_languages"], todo)
            except PolicyViolation as exc:
                self._transition(state, pos, state="failed", error=f"POLICY_VIOLATION: {exc}", failed_languages=todo)
                state.failed += len(todo)
                state.fail_reasons.append(f"{pid}: {exc}")
                self._advance(state, len(todo))
                return

            applied: list[str] = []
            failed: list[str] = []
            errors: list[str] = []
            tokens = 0
            for language in todo:
                if self._cancel_requested(state):
                    break
                ok, error, used = await self._run_unit(state, product, language)
                tokens += used
                if ok:
                    applied.append(language)
                    state.applied += 1
                else:
                    failed.append(language)
                    errors.append(error)
                    state.failed += 1
                    state.fail_reasons.append(f"{pid}: {error}")
                self._advance(state, 1)

            not_run = todo[len(applied) + len(failed):]
            if not_run:
                errors.append(f"CANCELLED: {len(not_run)} language(s) not processed")
            final = "applied" if not failed and not not_run else "failed"
            self._transition(
                state,
                pos,
                state=final,
                error="; ".join(errors) or None,
                applied_languages=applied,
                failed_languages=failed,
                tokens_used=tokens,
            )
        finally:
            slots.release()

    async def _run_unit(self, state: _RunState, product: dict, language: str) -> tuple[bool, str | None, int]:
        pos = product["position"]
        pid = product["product_id"]
        state.units_started += 1
        self._transition(state, pos, state="generating")
        try:
            generated = await self.queue.add_bulk(
                lambda: self.provider.generate_seo(
                    pid,
                    language,
                    model=state.model,
                    title=product.get("title"),
                    description=product.get("description"),
                ),
                shop=state.shop,
                job_id=state.job_id,
                product_id=pid,
                language=language,
            )
        except Exception as exc:
            code = _failure_code(exc)
            logger.warning(f"Generation failed for {pid} [{language}]: {code}: {exc}")
            return False, f"{language}: {code}: {exc}", 0

        state.tokens_used += generated.total_tokens
        self._transition(state, pos, state="generated")
        self._transition(state, pos, state="applying")
        try:
            result = await self.platform.apply(state.shop, pid, language, generated.data, {})
            if not result.ok:
                raise ApplyFailure("; ".join(result.errors) or "apply_rejected")
        except Exception as exc:
            logger.warning(f"Apply failed for {pid} [{language}]: {exc}")
            return False, f"{language}: APPLY_FAILURE: {exc}", generated.total_tokens
        return True, None, generated.total_tokens

    def _transition(self, run: _RunState, position: int, **fields) -> None:
        db.update_job_product(run.job_id, position, **fields)
        self._cancel_requested(run)

    def _advance(self, state: _RunState, units: int) -> None:
        state.current += units
        elapsed = self.clock() - state.started
        per_unit = elapsed / state.current if state.current else settings.job_default_unit_sec
        remaining = math.ceil(max(state.total - state.current, 0) * per_unit)
        db.update_job(
            state.job_id,
            progress_current=state.current,
            remaining_seconds=remaining,
            applied_count=state.applied,
            failed_count=state.failed,
            skipped_count=state.skipped,
            tokens_used=state.tokens_used,
            message=f"Processing {state.current}/{state.total} units",
        )
        self._cancel_requested(state)

    def _cancel_requested(self, state: _RunState) -> bool:
        if not state.cancelled and db.is_cancel_requested(state.job_id):
            logger.info(f"Cancel requested for job {state.job_id}")
            state.cancelled = True
        return state.cancelled

    def _settle_reservation(self, job: dict, state: _RunState, note: str) -> None:
        reservation_id = db.get_job(state.job_id)["reservation_id"] or job.get("reservation_id")
        if not reservation_id:
            return
        try:
            if state.units_started:
                ledger.finalize(reservation_id, state.tokens_used, note=note)
            else:
                ledger.refund(reservation_id, note=note)
        except ReservationSettled as exc:
            logger.error(f"Reservation for job {state.job_id} was settled elsewhere: {exc}")

    def _finish(self, state: _RunState, status: str, message: str, error: str | None = None, code: str | None = None) -> None:
        db.update_job(
            state.job_id,
            status=status,
            message=message,
            error=error,
            failure_reason_code=code,
            progress_current=state.current,
            remaining_seconds=0,
            applied_count=state.applied,
            failed_count=state.failed,
            skipped_count=state.skipped,
            tokens_used=state.tokens_used,
            fail_reasons=state.fail_reasons[:10],
            skip_reasons=state.skip_reasons[:10],
        )

    def _summary(self, state: _RunState) -> str:
        duration = self.clock() - state.started
        parts = [f"{state.applied} applied"]
        if state.skipped:
            parts.append(f"{state.skipped} skipped")
        if state.failed:
            parts.append(f"{state.failed} failed")
        return f"Completed: {', '.join(parts)} in {duration:.1f}s"


def recover_interrupted_jobs(stale_after_sec: float | None = None) -> int:
    """Fail jobs that stopped reporting progress and settle their reservations."""
    stale_after_sec = settings.job_stale_sec if stale_after_sec is None else stale_after_sec
    recovered = 0
    for job in db.list_stale_jobs(stale_after_sec):
        db.update_job(
            job["job_id"],
            status="failed",
            error="no progress reported",
            failure_reason_code="INTERRUPTED",
            message=f"Interrupted after {job['progress_current']}/{job['progress_total']} units",
            remaining_seconds=0,
        )
        if job["reservation_id"]:
            try:
                if job["tokens_used"]:
                    ledger.finalize(job["reservation_id"], int(job["tokens_used"]), note="interrupted job")
                else:
                    ledger.refund(job["reservation_id"], note="interrupted job")
            except ReservationSettled:
                pass
        logger.warning(f"Recovered interrupted job {job['job_id']} for shop: {job['shop']}")
        recovered += 1
    return recovered
