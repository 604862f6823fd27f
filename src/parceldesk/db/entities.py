"""
Entity definitions shared by every backend.

Each entity is described once: its table, record model, which fields can
be filtered (and with what value type), which can be sorted, which take
part in free-text search, and which patch model lists its mutable columns.
Query validation and all three translators read from this registry, so a
field unknown here is unknown everywhere.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, get_origin

from pydantic import BaseModel

from parceldesk.errors import ValidationError
from parceldesk.models import (
    Account,
    AccountPatch,
    BroadcastLog,
    BroadcastLogPatch,
    BroadcastStatus,
    Role,
    Ticket,
    TicketComment,
    TicketPatch,
    TicketPriority,
    TicketStatus,
)

SortDirection = Literal["asc", "desc"]


@dataclass(frozen=True)
class EntityDefinition:
    """
    Configuration for a single entity type.

    Attributes:
        name: Registry key, also the table/collection name
        model: Record model returned to callers
        field_types: Filterable fields and the type their values coerce to
        sortable: Fields accepted by order_by
        search_fields: Fields matched (case-insensitive substring) by `search`
        default_order: Ordering used when the query names none
        patch_model: Allow-list of mutable columns, None for append-only entities
    """

    name: str
    model: type[BaseModel]
    field_types: dict[str, Any]
    sortable: frozenset[str]
    search_fields: tuple[str, ...] = ()
    default_order: tuple[str, SortDirection] = ("created_at", "desc")
    patch_model: type[BaseModel] | None = None
    id_field: str = "id"
    text_fields: frozenset[str] = field(init=False)

    def __post_init__(self):
        text = frozenset(
            name for name, typ in self.field_types.items()
            if typ is str or get_origin(typ) is Literal
        )
        object.__setattr__(self, "text_fields", text)

    @property
    def table(self) -> str:
        return self.name

    @property
    def columns(self) -> list[str]:
        return list(self.model.model_fields)


ACCOUNTS = EntityDefinition(
    name="accounts",
    model=Account,
    field_types={
        "id": str,
        "display_name": str,
        "email": str,
        "role": Role,
        "active": bool,
        "created_at": datetime,
        "updated_at": datetime,
    },
    sortable=frozenset({"display_name", "email", "role", "created_at", "updated_at"}),
    search_fields=("display_name", "email"),
    patch_model=AccountPatch,
)

TICKETS = EntityDefinition(
    name="tickets",
    model=Ticket,
    field_types={
        "id": str,
        "human_uid": str,
        "tracking_ref": str,
        "customer_contact": str,
        "subject": str,
        "description": str,
        "status": TicketStatus,
        "priority": TicketPriority,
        "assigned_account_id": str,
        "created_at": datetime,
        "updated_at": datetime,
        "closed_at": datetime,
    },
    sortable=frozenset({"human_uid", "subject", "status", "priority", "created_at", "updated_at", "closed_at"}),
    search_fields=("subject", "description", "tracking_ref", "human_uid"),
    patch_model=TicketPatch,
)

TICKET_COMMENTS = EntityDefinition(
    name="ticket_comments",
    model=TicketComment,
    field_types={
        "id": str,
        "ticket_id": str,
        "author_account_id": str,
        "text": str,
        "internal": bool,
        "created_at": datetime,
    },
    sortable=frozenset({"created_at"}),
    search_fields=("text",),
    default_order=("created_at", "asc"),
)

BROADCAST_LOGS = EntityDefinition(
    name="broadcast_logs",
    model=BroadcastLog,
    field_types={
        "id": str,
        "tracking_ref": str,
        "recipient_contact": str,
        "status": BroadcastStatus,
        "message_body": str,
        "error_detail": str,
        "broadcast_at": datetime,
        "created_at": datetime,
    },
    sortable=frozenset({"tracking_ref", "status", "broadcast_at", "created_at"}),
    search_fields=("tracking_ref", "recipient_contact", "message_body"),
    default_order=("broadcast_at", "desc"),
    patch_model=BroadcastLogPatch,
)

ENTITIES: dict[str, EntityDefinition] = {
    e.name: e for e in (ACCOUNTS, TICKETS, TICKET_COMMENTS, BROADCAST_LOGS)
}


def get_entity(name: str) -> EntityDefinition:
    try:
        return ENTITIES[name]
    except KeyError:
        raise ValidationError(f"Unknown entity '{name}'") from None
