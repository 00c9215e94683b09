from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError as PydanticValidationError

from charterdesk.app.auth import AuthContext, require_admin
from charterdesk.app.errors import (
    CharterDeskError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    StatusConflictError,
    ValidationError,
)
from charterdesk.app.models import (
    AllEntitiesFilter,
    AnalyticsEventRecord,
    AnalyticsEventRequest,
    AnalyticsEventResponse,
    AnalyticsFlushResponse,
    AnalyticsOverviewResponse,
    BulkStatusUpdateRequest,
    BulkUpdateSummary,
    ContactCreateRequest,
    ContactCreateResponse,
    ContactStatus,
    ContactSubmissionRecord,
    CreatedWindowFilter,
    EntityFilter,
    EntityKind,
    EntityListResponse,
    QuoteCreateRequest,
    QuoteCreateResponse,
    QuoteRequestRecord,
    QuoteStatus,
    SearchFilter,
    ServiceTypeCount,
    StatusDistributionResponse,
    StatusStatisticsResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
    StatusView,
    TimeSeriesPoint,
    utc_now,
)
from charterdesk.app.observability import MetricsRegistry, configure_logging, observe_request
from charterdesk.app.persistence import SqlPersistence
from charterdesk.app.services import analytics
from charterdesk.app.services.bulk import bulk_update_status, summarize
from charterdesk.app.services.event_queue import AnalyticsEventQueue
from charterdesk.app.services.rate_limit import RateLimitConfig, SlidingWindowRateLimiter
from charterdesk.app.services.recaptcha import (
    CONTACT_ACTION,
    QUOTE_ACTION,
    RecaptchaMissingTokenError,
    RecaptchaServiceError,
    RecaptchaVerificationError,
    verify_submission,
)
from charterdesk.app.services.status import StatusService, Store, service_for
from charterdesk.app.services.workflow import INITIAL_STATUS, available_actions, is_terminal
from charterdesk.app.settings import Settings, load_settings
from charterdesk.app.store import InMemoryStore, new_id

logger = logging.getLogger("charterdesk.api")


def create_app() -> FastAPI:
    configure_logging()
    settings = load_settings()
    store: Store = (
        SqlPersistence(settings.database_url) if settings.persistence_enabled else InMemoryStore()
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        try:
            drained = app.state.event_queue.drain()
            logger.info("analytics_queue_drained events=%s", drained)
        except PersistenceError:
            logger.exception(
                "analytics_queue_drain_failed pending=%s", app.state.event_queue.pending_count
            )

    app = FastAPI(title="Charter Desk API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.store = store
    app.state.metrics = MetricsRegistry()
    app.state.services = {kind: service_for(kind, store) for kind in EntityKind}
    app.state.event_queue = AnalyticsEventQueue(
        store,
        batch_size=settings.analytics_batch_size,
        dedup_window_seconds=settings.analytics_dedup_window_seconds,
    )
    app.state.rate_limiters = {
        EntityKind.quote: SlidingWindowRateLimiter(
            RateLimitConfig("quote", settings.quote_rate_limit_per_hour, 3600)
        ),
        EntityKind.contact: SlidingWindowRateLimiter(
            RateLimitConfig("contact", settings.contact_rate_limit_per_hour, 3600)
        ),
    }

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = [
            {"loc": list(error.get("loc", [])), "msg": error.get("msg", ""), "type": error.get("type")}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": {"reason": "validation_error", "errors": errors}},
        )

    app.include_router(build_router())
    app.include_router(build_entity_router(EntityKind.quote))
    app.include_router(build_entity_router(EntityKind.contact))
    app.include_router(build_analytics_router())
    return app


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_service(request: Request, kind: EntityKind) -> StatusService:
    return request.app.state.services[kind]


def get_event_queue(request: Request) -> AnalyticsEventQueue:
    return request.app.state.event_queue


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def http_error(exc: CharterDeskError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.to_detail())
    if isinstance(exc, (ValidationError, InvalidTransitionError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_detail())
    if isinstance(exc, StatusConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_detail())
    logger.error("request_failed reason=%s detail=%s", exc.reason, exc)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"reason": "internal_error", "message": "internal server error"},
    )


def build_filter(
    *,
    search: Optional[str],
    created_from: Optional[date],
    created_to: Optional[date],
) -> EntityFilter:
    if search and (created_from or created_to):
        raise ValidationError("search cannot be combined with a created date window")
    try:
        if search:
            return SearchFilter(term=search)
        if created_from or created_to:
            return CreatedWindowFilter(created_from=created_from, created_to=created_to)
    except PydanticValidationError as exc:
        messages = "; ".join(error["msg"] for error in exc.errors())
        raise ValidationError(messages) from exc
    return AllEntitiesFilter()


def enforce_rate_limit(request: Request, kind: EntityKind) -> None:
    limiter: SlidingWindowRateLimiter = request.app.state.rate_limiters[kind]
    decision = limiter.hit(client_ip(request))
    if not decision.allowed:
        logger.warning(
            "rate_limited kind=%s ip=%s retry_after=%s",
            kind.value,
            client_ip(request),
            decision.retry_after_seconds,
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"reason": "rate_limited", "message": "too many submissions, try again later"},
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )


def enforce_recaptcha(request: Request, token: Optional[str], action: str) -> None:
    try:
        verify_submission(
            get_settings(request),
            token=token,
            action=action,
            remote_ip=client_ip(request),
        )
    except RecaptchaMissingTokenError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RecaptchaVerificationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except RecaptchaServiceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        if not get_store(request).ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        return PlainTextResponse(get_metrics(request).to_prometheus())

    @router.post("/quotes", response_model=QuoteCreateResponse)
    def create_quote(payload: QuoteCreateRequest, request: Request) -> QuoteCreateResponse:
        enforce_rate_limit(request, EntityKind.quote)
        enforce_recaptcha(request, payload.recaptcha_token, QUOTE_ACTION)
        now = utc_now()
        record = QuoteRequestRecord(
            id=new_id("quote"),
            service_type=payload.service_type,
            full_name=payload.full_name.strip(),
            email=payload.email.lower(),
            phone=payload.phone,
            passengers=payload.passengers,
            origin=payload.origin.upper(),
            destination=payload.destination.upper(),
            departure_date=payload.departure_date,
            departure_time=payload.departure_time,
            locale=payload.locale,
            comments=payload.comments,
            created_at_utc=now,
            updated_at_utc=now,
        )
        try:
            get_store(request).insert_quote(record)
        except CharterDeskError as exc:
            raise http_error(exc) from exc
        logger.info("quote_created quote_id=%s service_type=%s", record.id, record.service_type.value)
        return QuoteCreateResponse(quote_id=record.id, current_status=QuoteStatus.pending)

    @router.post("/contacts", response_model=ContactCreateResponse)
    def create_contact(payload: ContactCreateRequest, request: Request) -> ContactCreateResponse:
        enforce_rate_limit(request, EntityKind.contact)
        enforce_recaptcha(request, payload.recaptcha_token, CONTACT_ACTION)
        record = ContactSubmissionRecord(
            id=new_id("contact"),
            full_name=payload.full_name.strip(),
            email=payload.email.lower(),
            phone=payload.phone,
            subject=payload.subject,
            message=payload.message,
            contact_via_whatsapp=payload.contact_via_whatsapp,
            locale=payload.locale,
            created_at_utc=utc_now(),
        )
        try:
            get_store(request).insert_contact(record)
        except CharterDeskError as exc:
            raise http_error(exc) from exc
        logger.info("contact_created contact_id=%s", record.id)
        return ContactCreateResponse(contact_id=record.id, current_status=ContactStatus.pending)

    @router.post("/analytics/events", response_model=AnalyticsEventResponse)
    def record_analytics_event(
        payload: AnalyticsEventRequest, request: Request
    ) -> AnalyticsEventResponse:
        queue = get_event_queue(request)
        accepted = queue.enqueue(
            payload,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        return AnalyticsEventResponse(
            accepted=accepted,
            deduplicated=not accepted,
            pending=queue.pending_count,
        )

    return router


def build_entity_router(kind: EntityKind) -> APIRouter:
    router = APIRouter(prefix=f"/admin/{kind.value}s", tags=[f"{kind.value}s"])

    def status_view(service: StatusService, entity_id: str) -> StatusView:
        service.get_entity(entity_id)
        history = service.get_history(entity_id)
        current = history[-1].status if history else INITIAL_STATUS
        return StatusView(
            entity_id=entity_id,
            entity_kind=kind,
            current_status=current,
            history=history,
            available_actions=available_actions(kind, current),
            terminal=is_terminal(kind, current),
        )

    @router.get("", response_model=EntityListResponse)
    def list_entities(
        request: Request,
        status_filter: Optional[str] = Query(default=None, alias="status"),
        search: Optional[str] = None,
        created_from: Optional[date] = None,
        created_to: Optional[date] = None,
        limit: int = 50,
        offset: int = 0,
        _: AuthContext = Depends(require_admin),
    ) -> EntityListResponse:
        service = get_service(request, kind)
        safe_limit = max(1, min(limit, 500))
        safe_offset = max(0, offset)
        try:
            criteria = build_filter(
                search=search, created_from=created_from, created_to=created_to
            )
            if status_filter:
                items, total = service.list_by_status(
                    status_filter, criteria=criteria, limit=safe_limit, offset=safe_offset
                )
            else:
                items, total = service.list_entities(
                    criteria, limit=safe_limit, offset=safe_offset
                )
        except CharterDeskError as exc:
            raise http_error(exc) from exc
        return EntityListResponse(
            entity_kind=kind,
            total=total,
            limit=safe_limit,
            offset=safe_offset,
            has_more=safe_offset + len(items) < total,
            items=items,
        )

    @router.get("/statistics", response_model=StatusStatisticsResponse)
    def statistics(
        request: Request,
        _: AuthContext = Depends(require_admin),
    ) -> StatusStatisticsResponse:
        try:
            stats = get_service(request, kind).get_statistics()
        except CharterDeskError as exc:
            raise http_error(exc) from exc
        return StatusStatisticsResponse(entity_kind=kind, total=sum(stats.values()), statistics=stats)

    if kind == EntityKind.quote:

        @router.get("/stale", response_model=EntityListResponse)
        def stale_entities(
            request: Request,
            days_old: Optional[int] = None,
            _: AuthContext = Depends(require_admin),
        ) -> EntityListResponse:
            days = days_old if days_old is not None else get_settings(request).stale_quote_days
            try:
                items = get_service(request, kind).list_stale(days)
            except CharterDeskError as exc:
                raise http_error(exc) from exc
            return EntityListResponse(
                entity_kind=kind,
                total=len(items),
                limit=len(items),
                offset=0,
                has_more=False,
                items=items,
            )

    @router.get("/{entity_id}/status", response_model=StatusView)
    def get_status(
        entity_id: str,
        request: Request,
        _: AuthContext = Depends(require_admin),
    ) -> StatusView:
        try:
            return status_view(get_service(request, kind), entity_id)
        except CharterDeskError as exc:
            raise http_error(exc) from exc

    @router.patch("/{entity_id}/status", response_model=StatusUpdateResponse)
    def update_status(
        entity_id: str,
        payload: StatusUpdateRequest,
        request: Request,
        context: AuthContext = Depends(require_admin),
    ) -> StatusUpdateResponse:
        service = get_service(request, kind)
        try:
            record = service.update_status(
                entity_id,
                payload.status,
                context.email,
                payload.note,
                ip_address=client_ip(request),
                user_agent=request.headers.get("user-agent"),
                expected_status=payload.expected_status,
            )
        except CharterDeskError as exc:
            raise http_error(exc) from exc
        get_metrics(request).record_status_change(entity_kind=kind.value, status=record.status)
        # The record is committed at this point. A failed read-back still answers 500,
        # so the client must re-read the status before retrying the change.
        try:
            view = status_view(service, entity_id)
        except CharterDeskError as exc:
            logger.error(
                "status_view_failed kind=%s entity_id=%s record_id=%s",
                kind.value,
                entity_id,
                record.id,
            )
            raise http_error(exc) from exc
        return StatusUpdateResponse(status_change=record, **view.model_dump())

    @router.post("/bulk-status", response_model=BulkUpdateSummary)
    def bulk_status(
        payload: BulkStatusUpdateRequest,
        request: Request,
        context: AuthContext = Depends(require_admin),
    ) -> BulkUpdateSummary:
        try:
            outcomes = bulk_update_status(
                get_service(request, kind),
                payload.entity_ids,
                payload.status,
                context.email,
                payload.note,
            )
        except CharterDeskError as exc:
            raise http_error(exc) from exc
        summary = summarize(outcomes)
        get_metrics(request).record_status_change(
            entity_kind=kind.value,
            status=payload.status.strip().lower(),
            count=summary.updated,
        )
        logger.info(
            "bulk_status_update kind=%s requested=%s updated=%s failed=%s",
            kind.value,
            summary.requested,
            summary.updated,
            summary.failed,
        )
        return summary

    return router


def build_analytics_router() -> APIRouter:
    router = APIRouter(prefix="/admin/analytics", tags=["analytics"])

    @router.get("/status-distribution", response_model=StatusDistributionResponse)
    def status_distribution(
        request: Request,
        kind: str = EntityKind.quote.value,
        time_range: Optional[str] = None,
        _: AuthContext = Depends(require_admin),
    ) -> StatusDistributionResponse:
        try:
            entity_kind = EntityKind(kind.strip().lower())
        except ValueError as exc:
            raise http_error(ValidationError(f"invalid entity kind: {kind!r}")) from exc
        try:
            parsed_range = analytics.parse_time_range(time_range)
            counts = analytics.get_status_distribution(
                get_store(request), entity_kind, parsed_range
            )
        except CharterDeskError as exc:
            raise http_error(exc) from exc
        return StatusDistributionResponse(
            entity_kind=entity_kind,
            time_range=parsed_range,
            total=sum(counts.values()),
            statistics=counts,
        )

    @router.get("/overview", response_model=AnalyticsOverviewResponse)
    def overview(
        request: Request,
        time_range: Optional[str] = None,
        group_by: Optional[str] = None,
        limit: int = 5,
        _: AuthContext = Depends(require_admin),
    ) -> AnalyticsOverviewResponse:
        store = get_store(request)
        try:
            parsed_range = analytics.parse_time_range(time_range)
            parsed_group = analytics.parse_group_by(group_by)
            return AnalyticsOverviewResponse(
                time_range=parsed_range,
                total_quotes=analytics.total_entities(store, EntityKind.quote, parsed_range),
                total_contacts=analytics.total_entities(store, EntityKind.contact, parsed_range),
                conversion_rate=analytics.conversion_rate(store, parsed_range),
                average_response_hours=analytics.average_response_hours(store, parsed_range),
                top_routes=analytics.top_routes(store, limit, parsed_range),
                group_by=parsed_group,
                quotes_over_time=analytics.quotes_over_time(store, parsed_range, parsed_group),
                quotes_by_service_type=analytics.quotes_by_service_type(store, parsed_range),
            )
        except CharterDeskError as exc:
            raise http_error(exc) from exc

    @router.get("/quotes-over-time", response_model=list[TimeSeriesPoint])
    def quote_time_series(
        request: Request,
        time_range: Optional[str] = None,
        group_by: Optional[str] = None,
        _: AuthContext = Depends(require_admin),
    ) -> list[TimeSeriesPoint]:
        try:
            return analytics.quotes_over_time(
                get_store(request),
                analytics.parse_time_range(time_range),
                analytics.parse_group_by(group_by),
            )
        except CharterDeskError as exc:
            raise http_error(exc) from exc

    @router.get("/service-types", response_model=list[ServiceTypeCount])
    def service_types(
        request: Request,
        time_range: Optional[str] = None,
        _: AuthContext = Depends(require_admin),
    ) -> list[ServiceTypeCount]:
        try:
            return analytics.quotes_by_service_type(
                get_store(request), analytics.parse_time_range(time_range)
            )
        except CharterDeskError as exc:
            raise http_error(exc) from exc

    @router.get("/events", response_model=list[AnalyticsEventRecord])
    def recent_events(
        request: Request,
        limit: int = 100,
        _: AuthContext = Depends(require_admin),
    ) -> list[AnalyticsEventRecord]:
        try:
            return get_store(request).list_analytics_events(limit)
        except CharterDeskError as exc:
            raise http_error(exc) from exc

    @router.post("/flush", response_model=AnalyticsFlushResponse)
    def flush_events(
        request: Request,
        _: AuthContext = Depends(require_admin),
    ) -> AnalyticsFlushResponse:
        queue = get_event_queue(request)
        try:
            flushed = queue.drain()
        except CharterDeskError as exc:
            raise http_error(exc) from exc
        return AnalyticsFlushResponse(flushed=flushed, pending=queue.pending_count)

    return router
