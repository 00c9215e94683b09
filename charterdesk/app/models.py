from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EntityKind(str, Enum):
    quote = "quote"
    contact = "contact"


class QuoteStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    quoted = "quoted"
    converted = "converted"
    closed = "closed"


class ContactStatus(str, Enum):
    pending = "pending"
    responded = "responded"
    closed = "closed"


class Locale(str, Enum):
    es = "es"
    en = "en"
    pt = "pt"


class ServiceType(str, Enum):
    charter = "charter"
    empty_legs = "empty_legs"
    multicity = "multicity"
    helicopter = "helicopter"
    medical = "medical"
    cargo = "cargo"
    other = "other"


class TimeRange(str, Enum):
    last_7_days = "7d"
    last_30_days = "30d"
    last_90_days = "90d"
    all = "all"


class GroupBy(str, Enum):
    day = "day"
    week = "week"
    month = "month"


class QuoteCreateRequest(BaseModel):
    service_type: ServiceType
    full_name: str = Field(min_length=2, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(default=None, min_length=10, max_length=20)
    passengers: int = Field(ge=1, le=50)
    origin: str = Field(pattern=r"^[A-Za-z]{3}$")
    destination: str = Field(pattern=r"^[A-Za-z]{3}$")
    departure_date: date
    departure_time: str = Field(pattern=r"^\d{2}:\d{2}$")
    locale: Locale = Locale.es
    comments: Optional[str] = Field(default=None, max_length=1000)
    recaptcha_token: Optional[str] = Field(default=None, max_length=4000)

    @model_validator(mode="after")
    def validate_route(self) -> "QuoteCreateRequest":
        if self.origin.upper() == self.destination.upper():
            raise ValueError("origin and destination must differ")
        return self


class QuoteCreateResponse(BaseModel):
    quote_id: str
    current_status: QuoteStatus


class ContactCreateRequest(BaseModel):
    full_name: str = Field(min_length=2, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(default=None, min_length=10, max_length=20)
    subject: Optional[str] = Field(default=None, max_length=200)
    message: str = Field(min_length=10, max_length=1000)
    contact_via_whatsapp: bool = False
    locale: Locale = Locale.es
    recaptcha_token: Optional[str] = Field(default=None, max_length=4000)


class ContactCreateResponse(BaseModel):
    contact_id: str
    current_status: ContactStatus


class QuoteRequestRecord(BaseModel):
    id: str
    service_type: ServiceType
    full_name: str
    email: str
    phone: Optional[str]
    passengers: int
    origin: str
    destination: str
    departure_date: date
    departure_time: str
    locale: Locale
    comments: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class ContactSubmissionRecord(BaseModel):
    id: str
    full_name: str
    email: str
    phone: Optional[str]
    subject: Optional[str]
    message: str
    contact_via_whatsapp: bool
    locale: Locale
    created_at_utc: datetime


EntityRecord = Union[QuoteRequestRecord, ContactSubmissionRecord]


class StatusRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    sequence: int
    entity_id: str
    entity_kind: EntityKind
    from_status: str
    status: str
    changed_by: str
    note: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    occurred_at: datetime


class AnalyticsEventRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    event_name: str
    event_data: dict[str, Any]
    session_id: Optional[str]
    page_path: Optional[str]
    referrer: Optional[str]
    locale: Optional[Locale]
    ip_address: Optional[str]
    user_agent: Optional[str]
    occurred_at: datetime


class AllEntitiesFilter(BaseModel):
    mode: Literal["all"] = "all"


class CreatedWindowFilter(BaseModel):
    mode: Literal["created_window"] = "created_window"
    created_from: Optional[date] = None
    created_to: Optional[date] = None

    @model_validator(mode="after")
    def validate_window(self) -> "CreatedWindowFilter":
        if self.created_from is None and self.created_to is None:
            raise ValueError("created_window filter needs created_from or created_to")
        if self.created_from and self.created_to and self.created_from > self.created_to:
            raise ValueError("created_from cannot be greater than created_to")
        return self


class SearchFilter(BaseModel):
    mode: Literal["search"] = "search"
    term: str = Field(min_length=1, max_length=120)


EntityFilter = Annotated[
    Union[AllEntitiesFilter, CreatedWindowFilter, SearchFilter],
    Field(discriminator="mode"),
]


class StatusUpdateRequest(BaseModel):
    status: str = Field(min_length=1, max_length=40)
    note: Optional[str] = Field(default=None, max_length=1000)
    expected_status: Optional[str] = Field(default=None, max_length=40)


class StatusView(BaseModel):
    entity_id: str
    entity_kind: EntityKind
    current_status: str
    history: list[StatusRecord]
    available_actions: list[str]
    terminal: bool


class StatusUpdateResponse(StatusView):
    status_change: StatusRecord


class BulkStatusUpdateRequest(BaseModel):
    entity_ids: list[str]
    status: str = Field(min_length=1, max_length=40)
    note: Optional[str] = Field(default=None, max_length=1000)


class BulkUpdateError(BaseModel):
    reason: str
    message: str


class BulkUpdateOutcome(BaseModel):
    entity_id: str
    succeeded: bool
    record: Optional[StatusRecord] = None
    error: Optional[BulkUpdateError] = None


class BulkUpdateSummary(BaseModel):
    requested: int
    updated: int
    failed: int
    results: list[BulkUpdateOutcome]


class EntityWithStatus(BaseModel):
    entity: EntityRecord
    current_status: str


class EntityListResponse(BaseModel):
    entity_kind: EntityKind
    total: int
    limit: int
    offset: int
    has_more: bool
    items: list[EntityWithStatus]


class StatusStatisticsResponse(BaseModel):
    entity_kind: EntityKind
    total: int
    statistics: dict[str, int]


class StatusDistributionResponse(StatusStatisticsResponse):
    time_range: TimeRange


class RouteCount(BaseModel):
    route: str
    count: int


class TimeSeriesPoint(BaseModel):
    period: str
    count: int


class ServiceTypeCount(BaseModel):
    service_type: ServiceType
    count: int


class AnalyticsOverviewResponse(BaseModel):
    time_range: TimeRange
    total_quotes: int
    total_contacts: int
    conversion_rate: float
    average_response_hours: float
    top_routes: list[RouteCount]
    group_by: GroupBy
    quotes_over_time: list[TimeSeriesPoint]
    quotes_by_service_type: list[ServiceTypeCount]


class AnalyticsEventRequest(BaseModel):
    event_name: str = Field(min_length=1, max_length=50)
    event_data: dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = Field(default=None, max_length=100)
    page_path: Optional[str] = Field(default=None, max_length=255)
    referrer: Optional[str] = Field(default=None, max_length=255)
    locale: Optional[Locale] = None


class AnalyticsEventResponse(BaseModel):
    accepted: bool
    deduplicated: bool
    pending: int


class AnalyticsFlushResponse(BaseModel):
    flushed: int
    pending: int
