from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from urllib.parse import urlencode
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status

from multitalk.clients.s3_storage import S3StorageClient
from multitalk.clients.supabase_storage import SupabaseStorageClient
from multitalk.clients.synthesis import HttpSynthesisWorker, SimulatedSynthesisWorker
from multitalk.config import Settings, get_settings
from multitalk.errors import (
    InsufficientCredits,
    JobNotFound,
    JobValidationError,
    LedgerInvariantViolation,
    TransientFault,
    UnknownPlan,
)
from multitalk.events.publisher import JobEventPublisher
from multitalk.models.api import (
    AccountResponse,
    CheckoutRequest,
    CheckoutResponse,
    JobListResponse,
    JobResponse,
    PaddleWebhookPayload,
    VideoGenerationRequest,
    VideoGenerationResponse,
    WebhookAck,
    WorkerResultRequest,
    WorkerResultResponse,
)
from multitalk.models.domain import BillingEvent, BillingEventType, Plan, PlanStatus, WorkerOutcome, utcnow
from multitalk.queue.queue import BaseQueue, KafkaQueue, LocalQueue
from multitalk.services.job_lifecycle import JobLifecycleManager
from multitalk.services.job_store import JobStore
from multitalk.services.ledger import CreditLedger
from multitalk.services.reconciler import SubscriptionReconciler
from multitalk.services.replenishment import ReplenishmentScheduler
from multitalk.storage.repository import (
    AccountRepository,
    BillingEventRepository,
    JobRepository,
    SubscriptionRepository,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

_PADDLE_EVENT_TYPES = {
    "subscription_created": BillingEventType.SUBSCRIPTION_CREATED,
    "subscription_updated": BillingEventType.SUBSCRIPTION_UPDATED,
    "subscription_cancelled": BillingEventType.SUBSCRIPTION_CANCELLED,
}

_PADDLE_STATUSES = {
    "active": PlanStatus.ACTIVE,
    "trialing": PlanStatus.ACTIVE,
    "past_due": PlanStatus.PAST_DUE,
    "paused": PlanStatus.PAST_DUE,
    "deleted": PlanStatus.CANCELLED,
    "cancelled": PlanStatus.CANCELLED,
}


@dataclass
class Services:
    settings: Settings
    ledger: CreditLedger
    jobs: JobStore
    lifecycle: JobLifecycleManager
    reconciler: SubscriptionReconciler
    scheduler: ReplenishmentScheduler
    queue: BaseQueue
    worker: SimulatedSynthesisWorker | HttpSynthesisWorker
    events: JobEventPublisher | None = None

    def start(self) -> None:
        if self.settings.replenishment_enabled:
            self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        if isinstance(self.worker, SimulatedSynthesisWorker):
            self.worker.cancel_all()
        if isinstance(self.queue, KafkaQueue):
            self.queue.close()
        if self.events is not None:
            self.events.close()
        self.lifecycle.close()


def build_services(settings: Settings) -> Services:
    ledger = CreditLedger(AccountRepository())
    jobs = JobStore(JobRepository())
    storage = _build_storage(settings)
    events = _build_events(settings)
    lifecycle = JobLifecycleManager(ledger=ledger, jobs=jobs, storage=storage, settings=settings, events=events)
    worker = _build_worker(settings, lifecycle, storage)
    queue = _build_queue(settings, worker)
    lifecycle.bind_queue(queue)
    reconciler = SubscriptionReconciler(
        ledger=ledger,
        events=BillingEventRepository(),
        seed_balance=settings.free_trial_credits,
        subscriptions=SubscriptionRepository(),
        plan_prices=settings.plan_prices,
    )
    scheduler = ReplenishmentScheduler(
        ledger=ledger,
        rules=settings.replenishment_rules,
        tick_interval_seconds=settings.replenishment_tick_seconds,
    )
    return Services(
        settings=settings,
        ledger=ledger,
        jobs=jobs,
        lifecycle=lifecycle,
        reconciler=reconciler,
        scheduler=scheduler,
        queue=queue,
        worker=worker,
        events=events,
    )


def _build_storage(settings: Settings) -> S3StorageClient | SupabaseStorageClient:
    backend = settings.storage_backend.lower()
    if backend == "s3":
        return S3StorageClient(
            bucket=settings.uploads_bucket,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            endpoint_url=settings.s3_endpoint_url,
            region_name=settings.s3_region,
            public_url=settings.s3_public_url,
            timeout=settings.persist_timeout_seconds,
            addressing_style=settings.s3_addressing_style,
        )
    if backend == "supabase":
        return SupabaseStorageClient(
            api_url=settings.supabase_url,
            public_url=settings.supabase_public_url,
            bucket=settings.uploads_bucket,
            api_key=settings.supabase_service_role_key,
            timeout=settings.persist_timeout_seconds,
        )
    raise ValueError(f"unknown storage backend: {settings.storage_backend}")


def _build_events(settings: Settings) -> JobEventPublisher | None:
    if not (settings.kafka_enabled and settings.kafka_updates_topic):
        return None
    try:
        return JobEventPublisher(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            topic=settings.kafka_updates_topic,
        )
    except Exception:  # pragma: no cover - best effort logging
        log.warning("job event publisher unavailable", extra={"topic": settings.kafka_updates_topic}, exc_info=True)
        return None


def _build_worker(
    settings: Settings,
    lifecycle: JobLifecycleManager,
    storage: S3StorageClient | SupabaseStorageClient,
) -> SimulatedSynthesisWorker | HttpSynthesisWorker:
    mode = settings.worker_mode.lower()
    if mode == "http":
        return HttpSynthesisWorker(
            worker_url=settings.worker_url,
            callback_base_url=settings.public_base_url,
            on_rejected=lifecycle.reject_dispatch,
            storage=storage,
            callback_token=settings.worker_callback_token,
            timeout=settings.worker_timeout_seconds,
        )
    if mode == "simulated":
        return SimulatedSynthesisWorker(
            on_result=lifecycle.on_worker_result,
            delay_seconds=settings.simulated_worker_delay_seconds,
            artifact_base_url=settings.simulated_artifact_base_url,
            failure_rate=settings.simulated_failure_rate,
        )
    raise ValueError(f"unknown worker mode: {settings.worker_mode}")


def _build_queue(settings: Settings, worker: SimulatedSynthesisWorker | HttpSynthesisWorker) -> BaseQueue:
    if settings.kafka_enabled:
        return KafkaQueue(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            topic=settings.kafka_topic,
            group_id=settings.kafka_group_id,
            processor=worker.run,
        )
    return LocalQueue(processor=worker.run)


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Build the app and its services. Serve with ``uvicorn multitalk.main:create_app --factory``."""
    settings = settings or get_settings()
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.start()
        try:
            yield
        finally:
            services.stop()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.services = services
    app.include_router(router)
    return app


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_user_id(x_user_id: str | None = Header(default=None, alias="X-User-ID")) -> str:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-ID header required")
    return x_user_id


def require_worker_token(
    x_worker_token: str | None = Header(default=None, alias="X-Worker-Token"),
    services: Services = Depends(get_services),
) -> None:
    expected = services.settings.worker_callback_token
    if expected and not secrets.compare_digest(x_worker_token or "", expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid worker token")


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "OK", "timestamp": utcnow().isoformat()}


@router.post("/generate-video", response_model=VideoGenerationResponse, status_code=status.HTTP_202_ACCEPTED)
def generate_video(
    payload: VideoGenerationRequest,
    user_id: str = Depends(require_user_id),
    services: Services = Depends(get_services),
) -> VideoGenerationResponse:
    try:
        job = services.lifecycle.submit(user_id, payload)
    except JobValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except InsufficientCredits as exc:
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(exc)) from exc
    except TransientFault as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except LedgerInvariantViolation as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error") from exc
    return VideoGenerationResponse(video_id=str(job.id), job=job)


@router.get("/videos", response_model=JobListResponse)
def list_videos(
    user_id: str = Depends(require_user_id),
    services: Services = Depends(get_services),
) -> JobListResponse:
    return JobListResponse(items=services.lifecycle.list_jobs(user_id))


@router.get("/videos/{job_id}", response_model=JobResponse)
def get_video(
    job_id: UUID,
    user_id: str = Depends(require_user_id),
    services: Services = Depends(get_services),
) -> JobResponse:
    try:
        job = services.lifecycle.get_job(job_id, account_id=user_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video job not found") from exc
    return JobResponse(job=job)


@router.get("/account", response_model=AccountResponse)
def get_account(
    user_id: str = Depends(require_user_id),
    services: Services = Depends(get_services),
) -> AccountResponse:
    account = services.ledger.get_account(user_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return AccountResponse(account=account)


@router.post(
    "/jobs/{job_id}/result",
    response_model=WorkerResultResponse,
    dependencies=[Depends(require_worker_token)],
)
def worker_result(
    job_id: UUID,
    payload: WorkerResultRequest,
    services: Services = Depends(get_services),
) -> WorkerResultResponse:
    outcome = WorkerOutcome(
        success=payload.status.lower() in ("completed", "success", "succeeded"),
        artifact_ref=payload.artifact_ref,
        error_detail=payload.error_detail,
    )
    try:
        job = services.lifecycle.on_worker_result(job_id, outcome)
    except JobNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video job not found") from exc
    return WorkerResultResponse(job=job)


@router.post("/create-subscription", response_model=CheckoutResponse)
def create_subscription(
    payload: CheckoutRequest,
    user_id: str = Depends(require_user_id),
    services: Services = Depends(get_services),
) -> CheckoutResponse:
    if not payload.plan_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")
    try:
        subscription = services.reconciler.open_checkout(user_id, payload.plan_id)
    except UnknownPlan as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    settings = services.settings
    query = urlencode({"plan": subscription.plan.value, "user": user_id})
    return CheckoutResponse(
        subscription_id=str(subscription.id),
        checkout_url=f"{settings.checkout_base_url}?{query}",
        price=settings.plan_prices[subscription.plan.value],
    )


@router.post("/paddle-webhook", response_model=WebhookAck)
def paddle_webhook(
    payload: PaddleWebhookPayload,
    services: Services = Depends(get_services),
) -> WebhookAck:
    event = _billing_event_from_paddle(payload, services.settings)
    try:
        services.reconciler.apply(event)
    except LedgerInvariantViolation as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook processing failed") from exc
    return WebhookAck()


def _billing_event_from_paddle(payload: PaddleWebhookPayload, settings: Settings) -> BillingEvent:
    alert_name = (payload.alert_name or "").strip()
    event_type = _PADDLE_EVENT_TYPES.get(alert_name)
    if event_type is not None and not (payload.alert_id and payload.user_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook processing failed")
    return BillingEvent(
        external_event_id=payload.alert_id or "",
        # Unrecognised alerts keep their raw name; the reconciler acknowledges them.
        type=event_type.value if event_type is not None else alert_name,
        account_id=payload.user_id or "",
        target_plan=_resolve_plan(payload.subscription_plan_id, settings),
        target_status=_PADDLE_STATUSES.get((payload.status or "").lower()),
    )


def _resolve_plan(plan_id: str | None, settings: Settings) -> Plan | None:
    if not plan_id:
        return None
    name = settings.paddle_plan_ids.get(plan_id, plan_id)
    try:
        return Plan(name.lower())
    except ValueError:
        log.warning("unknown subscription plan id", extra={"plan_id": plan_id})
        return None
