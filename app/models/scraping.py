"""Data models for scraping sessions."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from app.errors import InvalidStatusTransitionError

UNKNOWN_PROVIDER = "Unknown"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Scrape session status."""

    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.STOPPED, SessionStatus.COMPLETED, SessionStatus.ERROR}
)

_ALLOWED_TRANSITIONS = {
    SessionStatus.RUNNING: {
        SessionStatus.PAUSED,
        SessionStatus.STOPPED,
        SessionStatus.COMPLETED,
        SessionStatus.ERROR,
    },
    SessionStatus.PAUSED: {
        SessionStatus.RUNNING,
        SessionStatus.STOPPED,
        SessionStatus.COMPLETED,
        SessionStatus.ERROR,
    },
}


def validate_transition(current: SessionStatus | None, new: SessionStatus) -> None:
    """Raise if moving from ``current`` to ``new`` is not allowed.

    Only ``running <-> paused`` may go back and forth; terminal statuses
    never change. Setting the same status again is a no-op.
    """
    if current is None or current == new:
        return
    if new not in _ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransitionError(
            f"Cannot move session from {current.value} to {new.value}"
        )


class ScrapeConfig(BaseModel):
    """Concurrency and feature switches for one session."""

    simultaneous_towns: int = Field(default=2, ge=1, le=5)
    simultaneous_industries: int = Field(default=2, ge=1, le=3)
    simultaneous_lookups: int = Field(default=2, ge=1, le=3)
    enable_provider_lookup: bool = True
    enable_captcha_detection: bool | None = None


class ScrapedBusiness(BaseModel):
    """A single business listing extracted from the maps results."""

    name: str = Field(min_length=1)
    phone: str = ""
    provider: str = ""
    address: str = ""
    maps_url: str = ""
    town: str
    industry: str = ""


class ScrapeProgress(BaseModel):
    """Progress snapshot surfaced on every town completion."""

    completed_towns: int = 0
    total_towns: int = 0
    percentage: int = 0
    towns_remaining: int = 0
    businesses_scraped: int = 0
    estimated_time_remaining: float = 0.0


class ScrapeSummary(BaseModel):
    """Final figures for a session."""

    total_businesses: int = 0
    towns_completed: int = 0
    errors: int = 0
    total_duration: float = 0.0
    average_town_duration: float = 0.0


class FailedTown(BaseModel):
    town: str
    error: str


class ScrapeState(BaseModel):
    """Resume cursor persisted on pause and completion."""

    current_town_index: int = 0
    completed_towns: list[str] = Field(default_factory=list)
    failed_towns: list[FailedTown] = Field(default_factory=list)
    results: list[ScrapedBusiness] = Field(default_factory=list)
    elapsed_seconds: float = 0.0


class ScrapeSessionRecord(BaseModel):
    """Durable representation of a scrape session."""

    id: str
    name: str
    towns: list[str]
    industries: list[str]
    config: ScrapeConfig = Field(default_factory=ScrapeConfig)
    status: SessionStatus = SessionStatus.RUNNING
    progress: int = 0
    state: ScrapeState | None = None
    summary: ScrapeSummary | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None


def build_session_name(towns: list[str], industries: list[str]) -> str:
    """Human-readable session label, e.g. ``"Durban, Paarl - 3 Industries"``."""
    town_part = ", ".join(towns[:3])
    if len(towns) > 3:
        town_part = f"{town_part} +{len(towns) - 3} more"
    if not industries:
        return f"{town_part} - Business Search"
    suffix = "Industry" if len(industries) == 1 else "Industries"
    return f"{town_part} - {len(industries)} {suffix}"


class ProviderCacheEntry(BaseModel):
    phone: str
    provider: str
    cached_at: datetime = Field(default_factory=utc_now)


class RetryItemStatus(str, Enum):
    PENDING = "pending"
    FAILED = "failed"


class RetryQueueItem(BaseModel):
    """An operation waiting for an out-of-band retry."""

    id: str
    item_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = None
    attempts: int = 0
    max_attempts: int = 3
    next_retry_time: float
    status: RetryItemStatus = RetryItemStatus.PENDING
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
