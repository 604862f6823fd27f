"""
TicketDesk - what the route layer calls.

Composes the data layer with realtime notifications and applies the
access rules:
- agents see, update and comment on only the tickets assigned to them
- ticket deletion and account management are admin-only
- the automation path (keyed workflow integration) acts without an account

After each successful mutation the affected sessions are notified:
ticket events go to admins plus the assignee, broadcast-log events and a
refreshed dashboard go to everyone, and a newly assigned agent gets a
personal notification.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from parceldesk.db.adapter import QueryInput, coerce_payload
from parceldesk.db.facade import DatabaseFacade
from parceldesk.db.filters import MAX_LIMIT, ListQuery
from parceldesk.errors import PermissionDenied
from parceldesk.models import (
    Account,
    AccountPatch,
    AgentPerformance,
    BroadcastLog,
    BroadcastLogPatch,
    BroadcastStatus,
    BroadcastSummary,
    BroadcastTrendPoint,
    DashboardStats,
    PriorityShare,
    Role,
    Ticket,
    TicketComment,
    TicketCreate,
    TicketPatch,
    TicketStatus,
    TicketTrendPoint,
)
from parceldesk.realtime.hub import RealtimeHub, account_room, role_room

logger = logging.getLogger(__name__)

AUTOMATION_NOTE_PREFIX = "[automation] "


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as resolved by the auth layer."""

    account_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class TicketPage(BaseModel):
    items: list[Ticket]
    total: int
    limit: int
    offset: int


def _as_query(query: QueryInput) -> ListQuery:
    if query is None:
        return ListQuery()
    if isinstance(query, ListQuery):
        return query
    return ListQuery.build(query)


class TicketDesk:
    def __init__(self, db: DatabaseFacade, hub: RealtimeHub):
        self.db = db
        self.hub = hub

    # =========================================================================
    # Access rules
    # =========================================================================

    def _require_admin(self, actor: Actor, action: str) -> None:
        if not actor.is_admin:
            raise PermissionDenied(f"Only admins can {action}")

    async def _visible_ticket(self, actor: Actor, ticket_id: str) -> Ticket | None:
        ticket = await self.db.get_ticket_by_id(ticket_id)
        if ticket is not None and not actor.is_admin and ticket.assigned_account_id != actor.account_id:
            raise PermissionDenied("Access denied: ticket is not assigned to you")
        return ticket

    # =========================================================================
    # Tickets
    # =========================================================================

    async def list_tickets(self, actor: Actor, query: QueryInput = None) -> TicketPage:
        query = _as_query(query)
        if not actor.is_admin:
            query = query.where("assigned_account_id", "=", actor.account_id)
        items = await self.db.list_tickets(query)
        total = await self.db.count_tickets(query)
        return TicketPage(items=items, total=total, limit=query.limit, offset=query.offset)

    async def get_ticket(self, actor: Actor, ticket_id: str) -> Ticket | None:
        return await self._visible_ticket(actor, ticket_id)

    async def list_comments(self, actor: Actor, ticket_id: str) -> list[TicketComment] | None:
        if await self._visible_ticket(actor, ticket_id) is None:
            return None
        return await self.db.list_ticket_comments(ticket_id)

    async def create_ticket(self, actor: Actor, data: TicketCreate | Mapping[str, Any]) -> Ticket:
        payload = coerce_payload(TicketCreate, data)
        if not actor.is_admin:
            if payload.assigned_account_id not in (None, actor.account_id):
                raise PermissionDenied("Agents can only create tickets assigned to themselves")
            # Unassigned agent tickets would be invisible to their creator
            payload = payload.model_copy(update={"assigned_account_id": actor.account_id})
        ticket = await self.db.create_ticket(payload)
        self._ticket_changed(ticket, previous=None)
        return ticket

    async def update_ticket(self, actor: Actor, ticket_id: str, patch: TicketPatch | Mapping[str, Any]) -> Ticket | None:
        patch = coerce_payload(TicketPatch, patch)
        current = await self._visible_ticket(actor, ticket_id)
        if current is None:
            return None
        if (
            not actor.is_admin
            and "assigned_account_id" in patch.model_fields_set
            and patch.assigned_account_id != actor.account_id
        ):
            raise PermissionDenied("Only admins can reassign tickets")

        ticket = await self.db.update_ticket(ticket_id, patch)
        if ticket is not None:
            self._ticket_changed(ticket, previous=current)
        return ticket

    async def add_comment(
        self,
        actor: Actor,
        ticket_id: str,
        text: str,
        internal: bool = False,
        status: TicketStatus | None = None,
    ) -> TicketComment | None:
        """
        Comment on a ticket, optionally moving it to `status` in the same
        unit of work.
        """
        current = await self._visible_ticket(actor, ticket_id)
        if current is None:
            return None
        comment = {"text": text, "internal": internal, "author_account_id": actor.account_id}

        if status is None:
            return await self.db.add_ticket_comment(ticket_id, comment)

        result = await self.db.transition_ticket(ticket_id, status, comment)
        if result is None:
            return None
        self._ticket_changed(result.ticket, previous=current)
        return result.comment

    async def delete_ticket(self, actor: Actor, ticket_id: str) -> bool:
        self._require_admin(actor, "delete tickets")
        current = await self.db.get_ticket_by_id(ticket_id, use_cache=False)
        if current is None or not await self.db.delete_ticket(ticket_id):
            return False

        rooms = [role_room("admin")]
        if current.assigned_account_id:
            rooms.append(account_room(current.assigned_account_id))
        self.hub.emit_to_rooms(
            rooms, "ticket:updated", {"ticket": current, "deleted": True}, type="ticket_deleted",
        )
        logger.info(f"Ticket {current.human_uid} deleted by {actor.account_id}")
        return True

    def _ticket_changed(self, ticket: Ticket, previous: Ticket | None) -> None:
        if previous is None:
            self.hub.ticket_created(ticket)
            previous_assignee = None
        else:
            previous_assignee = previous.assigned_account_id
            moved_from = previous_assignee if previous_assignee != ticket.assigned_account_id else None
            self.hub.ticket_updated(ticket, previous_assignee=moved_from)

        if ticket.assigned_account_id and ticket.assigned_account_id != previous_assignee:
            self.hub.notify_account(ticket.assigned_account_id, {
                "message": f"Ticket {ticket.human_uid} has been assigned to you",
                "ticket_id": ticket.id,
            })

    # =========================================================================
    # Accounts (admin only)
    # =========================================================================

    async def list_accounts(self, actor: Actor, query: QueryInput = None) -> list[Account]:
        self._require_admin(actor, "list accounts")
        return await self.db.list_accounts(query)

    async def create_account(self, actor: Actor, data: Mapping[str, Any]) -> Account:
        self._require_admin(actor, "create accounts")
        return await self.db.create_account(data)

    async def update_account(self, actor: Actor, account_id: str, patch: AccountPatch | Mapping[str, Any]) -> Account | None:
        self._require_admin(actor, "update accounts")
        patch = coerce_payload(AccountPatch, patch)
        if account_id == actor.account_id and patch.model_fields_set & {"role", "active"}:
            raise PermissionDenied("Admins cannot change their own role or active flag")
        return await self.db.update_account(account_id, patch)

    async def delete_account(self, actor: Actor, account_id: str, reassign_to: str | None = None) -> bool:
        self._require_admin(actor, "delete accounts")
        if account_id == actor.account_id:
            raise PermissionDenied("Admins cannot delete their own account")
        return await self.db.delete_account(account_id, reassign_to=reassign_to)

    # =========================================================================
    # Dashboard & monitoring
    # =========================================================================

    async def dashboard_summary(self, actor: Actor) -> DashboardStats:
        return await self.db.get_dashboard_stats()

    async def ticket_trends(self, actor: Actor, days: int = 7) -> list[TicketTrendPoint]:
        return await self.db.get_ticket_trends(days)

    async def broadcast_trends(self, actor: Actor, days: int = 7) -> list[BroadcastTrendPoint]:
        return await self.db.get_broadcast_trends(days)

    async def agent_performance(self, actor: Actor) -> list[AgentPerformance]:
        return await self.db.get_agent_performance()

    async def priority_distribution(self, actor: Actor, days: int = 30) -> list[PriorityShare]:
        return await self.db.get_priority_distribution(days)

    async def broadcast_summary(
        self, actor: Actor, date_from: datetime | None = None, date_to: datetime | None = None
    ) -> BroadcastSummary:
        return await self.db.get_broadcast_summary(date_from, date_to)

    async def list_broadcast_logs(self, actor: Actor, query: QueryInput = None) -> list[BroadcastLog]:
        return await self.db.list_broadcast_logs(query)

    def _broadcast_changed(self, log: BroadcastLog) -> None:
        self.hub.broadcast_log_updated(log)
        self.hub.refresh_dashboard()

    # =========================================================================
    # Automation path
    # =========================================================================

    async def automation_create_ticket(self, data: TicketCreate | Mapping[str, Any]) -> Ticket:
        ticket = await self.db.create_ticket(data)
        logger.info(f"Automation created ticket {ticket.human_uid}")
        self._ticket_changed(ticket, previous=None)
        return ticket

    async def automation_set_status(self, ticket_id: str, status: TicketStatus, comment: str | None = None) -> Ticket | None:
        """Move a ticket to `status`; `comment` is stored as an internal note."""
        current = await self.db.get_ticket_by_id(ticket_id, use_cache=False)
        if current is None:
            return None
        note = {"text": f"{AUTOMATION_NOTE_PREFIX}{comment}", "internal": True} if comment else None
        result = await self.db.transition_ticket(ticket_id, status, note)
        if result is None:
            return None
        logger.info(f"Automation moved ticket {result.ticket.human_uid} to {status}")
        self._ticket_changed(result.ticket, previous=current)
        return result.ticket

    async def automation_record_broadcast(self, data: Mapping[str, Any]) -> BroadcastLog:
        log = await self.db.create_broadcast_log(data)
        self._broadcast_changed(log)
        return log

    async def automation_update_broadcast_status(
        self,
        log_id: str,
        status: BroadcastStatus,
        error_detail: str | None = None,
    ) -> BroadcastLog | None:
        patch = coerce_payload(BroadcastLogPatch, {"status": status, "error_detail": error_detail})
        log = await self.db.update_broadcast_log(log_id, patch)
        if log is not None:
            self._broadcast_changed(log)
        return log

    async def ticket_by_tracking_ref(self, tracking_ref: str) -> Ticket | None:
        """Most recent ticket for a tracking number."""
        query = ListQuery.build({"tracking_ref": tracking_ref}, limit=1, order_by="created_at", order_dir="desc")
        tickets = await self.db.list_tickets(query)
        return tickets[0] if tickets else None

    async def broadcasts_by_tracking_ref(self, tracking_ref: str) -> list[BroadcastLog]:
        query = ListQuery.build({"tracking_ref": tracking_ref}, limit=MAX_LIMIT, order_by="broadcast_at", order_dir="desc")
        return await self.db.list_broadcast_logs(query)
