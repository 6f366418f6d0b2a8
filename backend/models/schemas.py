from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ── Enums ──


class Basis(str, Enum):
    price = "price"
    market_cap = "marketCap"


class CallStatus(str, Enum):
    active = "active"
    completed = "completed"


class PeakRule(str, Enum):
    ath_after_call = "ath-after-call"
    local_high = "local-high"


class SkipReason(str, Enum):
    no_entry_basis = "no-entry-basis"
    no_improvement = "no-improvement"
    data_unavailable = "data-unavailable"
    lock_contention = "lock-contention"
    validation_failed = "validation-failed"


class RunStatus(str, Enum):
    running = "running"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"


MILESTONE_THRESHOLDS: tuple[int, ...] = (2, 5, 10, 25, 50, 100)


def milestone_key(threshold: int) -> str:
    return f"x{threshold}"


# ── Call record ──


class Entry(BaseModel):
    price: Optional[float] = None
    market_cap: Optional[float] = None

    def value_for(self, basis: Basis) -> Optional[float]:
        if basis == Basis.market_cap:
            return self.market_cap
        return self.price


class ProgressMax(BaseModel):
    price: Optional[float] = None
    market_cap: Optional[float] = None
    timestamp: Optional[int] = None
    basis: Optional[Basis] = None


class Progress(BaseModel):
    max: ProgressMax = Field(default_factory=ProgressMax)
    multiplier: float = 1.0


class Milestone(BaseModel):
    hit: bool = False
    timestamp: Optional[int] = None


def empty_milestones() -> dict[str, Milestone]:
    return {milestone_key(t): Milestone() for t in MILESTONE_THRESHOLDS}


class CallRow(BaseModel):
    id: str
    token: str
    caller_id: Optional[str] = None
    group_id: Optional[str] = None
    call_ts: int
    basis: Basis
    entry: Entry
    progress: Progress = Field(default_factory=Progress)
    milestones: dict[str, Milestone] = Field(default_factory=empty_milestones)
    status: CallStatus = CallStatus.active
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CallFilters(BaseModel):
    token: Optional[str] = None
    tokens: Optional[list[str]] = None
    group_id: Optional[str] = None
    from_ts: Optional[int] = None
    to_ts: Optional[int] = None


# ── Market data ──


class Candle(BaseModel):
    timestamp: int
    price_high: Optional[float] = None
    market_cap_high: Optional[float] = None

    def value_for(self, basis: Basis) -> Optional[float]:
        if basis == Basis.market_cap:
            return self.market_cap_high
        return self.price_high


class AthDescriptor(BaseModel):
    basis: Basis
    value: float
    timestamp: Optional[int] = None  # None when the provider cannot date it


class MarketWindow(BaseModel):
    """Everything fetched for one token in one pass."""

    token: str
    from_ts: int
    to_ts: int
    ath: Optional[AthDescriptor] = None
    candles: list[Candle] = []


class TokenSnapshot(BaseModel):
    token: str
    current_price: Optional[float] = None
    current_market_cap: Optional[float] = None
    ath: Optional[AthDescriptor] = None

    def current_for(self, basis: Basis) -> Optional[float]:
        if basis == Basis.market_cap:
            return self.current_market_cap
        return self.current_price


# ── Engine results ──


class ResolvedPeak(BaseModel):
    value: float
    timestamp: int
    basis_used: Basis
    rule: PeakRule


class ReconcileResult(BaseModel):
    call_id: str
    token: str
    updated: bool = False
    reason: str
    rule: Optional[PeakRule] = None
    previous_multiplier: float = 1.0
    new_multiplier: Optional[float] = None
    new_max: Optional[ProgressMax] = None
    new_milestones: dict[str, Milestone] = {}
    audit_note: Optional[str] = None


class AuditResult(BaseModel):
    call_id: str
    token: str
    corrupted: bool
    reason: str = ""
    stored_max_pct: float
    max_possible_pct: float


class CorruptionReport(BaseModel):
    total: int = 0
    corrupted_count: int = 0
    corruption_rate: float = 0.0
    corrupted: list[AuditResult] = []
    fixed: int = 0
    failed: int = 0
    dry_run: bool = True


class SweepSummary(BaseModel):
    status: str = "completed"  # "completed" or "already-running"
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    results: list[ReconcileResult] = []


class BackfillRun(BaseModel):
    run_id: str
    filters: CallFilters = Field(default_factory=CallFilters)
    limit: int
    dry_run: bool = False
    cursor: Optional[str] = None
    next_cursor: Optional[str] = None
    has_more: bool = False
    total: int = 0
    scanned: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    status: RunStatus = RunStatus.running
    error: Optional[str] = None
    started_at: datetime
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ── API request / response models ──


class RefreshTokensRequest(BaseModel):
    tokens: list[str] = Field(min_length=1)


class RefreshTriggerResponse(BaseModel):
    status: str  # "running" or "already-running"


class RefreshStatusResponse(BaseModel):
    is_refreshing: bool
    tokens_total: int = 0
    tokens_processed: int = 0
    current_token: Optional[str] = None
    error: Optional[str] = None
    last_refresh_at: Optional[datetime] = None
    next_refresh_in_seconds: Optional[float] = None
    last_summary: dict = {}


class MilestoneProgressEntry(BaseModel):
    threshold: int
    crossed: bool
    progress: float


class NextMilestone(BaseModel):
    threshold: int
    display: str
    remaining: float
    progress: float


class CallMilestonesResponse(BaseModel):
    call_id: str
    multiplier: float
    milestones: dict[str, Milestone]
    progress: dict[str, MilestoneProgressEntry]
    next_milestone: Optional[NextMilestone] = None


class BackfillRequest(BaseModel):
    run_id: Optional[str] = None
    group_id: Optional[str] = None
    token: Optional[str] = None
    from_ts: Optional[int] = None
    to_ts: Optional[int] = None
    limit: Optional[int] = None
    cursor: Optional[str] = None
    dry_run: bool = False


class BackfillRunListResponse(BaseModel):
    runs: list[BackfillRun]
    total: int


class CleanupRequest(BaseModel):
    older_than_days: Optional[int] = None


class CorruptionFixRequest(BaseModel):
    token: Optional[str] = None
    group_id: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    database_connected: bool = False
    last_refresh_at: Optional[datetime] = None
    next_refresh_at: Optional[datetime] = None
