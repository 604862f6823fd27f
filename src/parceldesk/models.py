"""
ParcelDesk - Entity models.

Records returned by every backend adapter, plus the create/patch payloads
adapters accept. Patch models are the allow-list of mutable columns: a
field that is not declared on a patch model can never reach a backend.
"""

import secrets
import uuid
from datetime import date, datetime, timezone
from typing import Annotated, Any, ClassVar, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator

Role = Literal["admin", "agent"]
TicketStatus = Literal["open", "pending", "on_hold", "closed"]
TicketPriority = Literal["low", "medium", "high", "urgent"]
BroadcastStatus = Literal["pending", "success", "failed"]


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they were written as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


def new_id() -> str:
    return str(uuid.uuid4())


def new_ticket_uid(now: datetime | None = None) -> str:
    """Human-facing ticket id, e.g. CS-2026-4F9A1C."""
    now = now or utc_now()
    return f"CS-{now.year}-{secrets.token_hex(3).upper()}"


# =============================================================================
# Records
# =============================================================================


class Account(BaseModel):
    id: str
    display_name: str
    email: str
    credential_hash: str
    role: Role
    active: bool = True
    created_at: UtcDatetime
    updated_at: UtcDatetime


class Ticket(BaseModel):
    id: str
    human_uid: str
    tracking_ref: str | None = None
    customer_contact: str | None = None
    subject: str
    description: str = ""
    status: TicketStatus = "open"
    priority: TicketPriority = "medium"
    assigned_account_id: str | None = None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    closed_at: UtcDatetime | None = None

    @model_validator(mode="after")
    def check_closed_at(self) -> "Ticket":
        if (self.status == "closed") != (self.closed_at is not None):
            raise ValueError(
                f"ticket {self.human_uid}: closed_at must be set iff status is closed "
                f"(status={self.status}, closed_at={self.closed_at})"
            )
        return self


class TicketComment(BaseModel):
    id: str
    ticket_id: str
    author_account_id: str | None = None
    text: str
    internal: bool = False
    created_at: UtcDatetime


class BroadcastLog(BaseModel):
    id: str
    tracking_ref: str
    recipient_contact: str
    status: BroadcastStatus
    message_body: str
    error_detail: str | None = None
    broadcast_at: UtcDatetime
    created_at: UtcDatetime


# =============================================================================
# Create payloads
# =============================================================================


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


def _normalize_email(value: str) -> str:
    value = value.strip().lower()
    if "@" not in value or value.startswith("@") or value.endswith("@"):
        raise ValueError(f"invalid email address: {value!r}")
    return value


class AccountCreate(_Payload):
    display_name: str = Field(min_length=1)
    email: str
    credential_hash: str = Field(min_length=1)
    role: Role = "agent"
    active: bool = True

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)


class TicketCreate(_Payload):
    subject: str = Field(min_length=1)
    description: str = ""
    tracking_ref: str | None = None
    customer_contact: str | None = None
    status: TicketStatus = "open"
    priority: TicketPriority = "medium"
    assigned_account_id: str | None = None


class TicketCommentCreate(_Payload):
    text: str = Field(min_length=1)
    internal: bool = False
    author_account_id: str | None = None


class BroadcastLogCreate(_Payload):
    tracking_ref: str = Field(min_length=1)
    recipient_contact: str = Field(min_length=1)
    message_body: str
    status: BroadcastStatus = "pending"
    error_detail: str | None = None
    broadcast_at: UtcDatetime | None = None


# =============================================================================
# Patches (allow-listed mutable columns)
# =============================================================================


class _Patch(_Payload):
    """
    Partial update. Only fields the caller explicitly set are applied.

    Subclasses list the columns that may be set to NULL in `nullable`;
    explicit None on any other field is rejected.
    """

    nullable: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="after")
    def check_fields(self) -> "_Patch":
        if not self.model_fields_set:
            raise ValueError("patch must set at least one field")
        for name in self.model_fields_set:
            if getattr(self, name) is None and name not in self.nullable:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(include=self.model_fields_set)


class AccountPatch(_Patch):
    display_name: str | None = Field(default=None, min_length=1)
    email: str | None = None
    credential_hash: str | None = Field(default=None, min_length=1)
    role: Role | None = None
    active: bool | None = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str | None) -> str | None:
        return _normalize_email(value) if value is not None else None


class TicketPatch(_Patch):
    nullable: ClassVar[frozenset[str]] = frozenset({"tracking_ref", "customer_contact", "assigned_account_id"})

    subject: str | None = Field(default=None, min_length=1)
    description: str | None = None
    tracking_ref: str | None = None
    customer_contact: str | None = None
    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    assigned_account_id: str | None = None


class BroadcastLogPatch(_Patch):
    nullable: ClassVar[frozenset[str]] = frozenset({"error_detail"})

    status: BroadcastStatus | None = None
    error_detail: str | None = None


def stamp_ticket_status(
    values: dict[str, Any],
    current: Ticket | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Derive closed_at from the status being written.

    Entering `closed` stamps closed_at (an already-closed ticket keeps its
    original stamp); any other status clears it. Values without a status
    are returned unchanged.
    """
    if "status" not in values:
        return values
    stamped = dict(values)
    if stamped["status"] == "closed":
        if current is not None and current.status == "closed" and current.closed_at:
            stamped["closed_at"] = current.closed_at
        else:
            stamped["closed_at"] = now or utc_now()
    else:
        stamped["closed_at"] = None
    return stamped


# =============================================================================
# Dashboard aggregates
# =============================================================================


class TicketCounts(BaseModel):
    total_tickets: int = 0
    open_tickets: int = 0
    pending_tickets: int = 0
    on_hold_tickets: int = 0
    closed_tickets: int = 0
    urgent_tickets: int = 0
    high_priority_tickets: int = 0

    @classmethod
    def from_rows(cls, rows: list[dict[str, Any]]) -> "TicketCounts":
        """Tally rows carrying `status` and `priority`."""
        counts = cls(total_tickets=len(rows))
        for row in rows:
            status_field = f"{row.get('status')}_tickets"
            if status_field in cls.model_fields and status_field != "total_tickets":
                setattr(counts, status_field, getattr(counts, status_field) + 1)
            if row.get("priority") == "urgent":
                counts.urgent_tickets += 1
            elif row.get("priority") == "high":
                counts.high_priority_tickets += 1
        return counts


class BroadcastCounts(BaseModel):
    total_broadcasts: int = 0
    successful_broadcasts: int = 0
    failed_broadcasts: int = 0
    pending_broadcasts: int = 0
    success_rate: float = 0.0

    @classmethod
    def from_statuses(cls, statuses: list[str]) -> "BroadcastCounts":
        return cls.from_totals(
            total=len(statuses),
            success=statuses.count("success"),
            failed=statuses.count("failed"),
            pending=statuses.count("pending"),
        )

    @classmethod
    def from_totals(cls, total: int, success: int, failed: int, pending: int) -> "BroadcastCounts":
        rate = round(success / total * 100, 2) if total else 0.0
        return cls(
            total_broadcasts=total,
            successful_broadcasts=success,
            failed_broadcasts=failed,
            pending_broadcasts=pending,
            success_rate=rate,
        )


class UserCounts(BaseModel):
    total_users: int = 0
    active_agents: int = 0
    active_admins: int = 0


class ActivityItem(BaseModel):
    type: Literal["ticket", "broadcast"]
    description: str
    timestamp: UtcDatetime


class DashboardStats(BaseModel):
    tickets: TicketCounts
    broadcasts: BroadcastCounts
    users: UserCounts
    recent_activity: list[ActivityItem] = []


# =============================================================================
# Analytics
# =============================================================================

PRIORITY_ORDER: tuple[TicketPriority, ...] = ("urgent", "high", "medium", "low")


def _rounded(value: float | None) -> float | None:
    return round(value, 2) if value is not None else None


class TicketTrendPoint(BaseModel):
    """Tickets created on one UTC day, by current status."""

    day: date
    total: int = 0
    open: int = 0
    pending: int = 0
    on_hold: int = 0
    closed: int = 0

    @classmethod
    def from_counts(cls, day: date, counts: TicketCounts) -> "TicketTrendPoint":
        return cls(
            day=day,
            total=counts.total_tickets,
            open=counts.open_tickets,
            pending=counts.pending_tickets,
            on_hold=counts.on_hold_tickets,
            closed=counts.closed_tickets,
        )


class BroadcastTrendPoint(BaseModel):
    day: date
    total: int = 0
    success: int = 0
    failed: int = 0
    pending: int = 0


class AgentPerformance(BaseModel):
    account_id: str
    display_name: str
    email: str
    total_tickets: int = 0
    closed_tickets: int = 0
    open_tickets: int = 0
    pending_tickets: int = 0
    resolution_rate: float | None = None
    avg_resolution_hours: float | None = None

    @classmethod
    def from_tallies(
        cls,
        account: dict[str, Any],
        total: int,
        closed: int,
        open: int,
        pending: int,
        avg_resolution_hours: float | None,
    ) -> "AgentPerformance":
        """Rates are percentages and hours are averages, both to two places; None with nothing to measure."""
        return cls(
            account_id=account["id"],
            display_name=account["display_name"],
            email=account["email"],
            total_tickets=total,
            closed_tickets=closed,
            open_tickets=open,
            pending_tickets=pending,
            resolution_rate=_rounded(closed / total * 100) if total else None,
            avg_resolution_hours=_rounded(avg_resolution_hours),
        )

    @staticmethod
    def ranking(agent: "AgentPerformance") -> tuple:
        return (-agent.total_tickets, agent.display_name, agent.account_id)


class PriorityShare(BaseModel):
    priority: TicketPriority
    count: int
    percentage: float

    @classmethod
    def distribution(cls, counts: dict[str, int]) -> list["PriorityShare"]:
        """Shares of the window's tickets, most urgent first; empty priorities are left out."""
        whole = sum(counts.values())
        return [
            cls(priority=priority, count=counts[priority], percentage=round(counts[priority] / whole * 100, 2))
            for priority in PRIORITY_ORDER
            if counts.get(priority)
        ]


class HourlyBroadcastPoint(BaseModel):
    hour: UtcDatetime
    total: int = 0
    success: int = 0
    failed: int = 0


class BroadcastSummary(BaseModel):
    date_from: UtcDatetime
    date_to: UtcDatetime | None = None
    summary: BroadcastCounts
    hourly: list[HourlyBroadcastPoint] = []
