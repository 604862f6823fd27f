"""
RealtimeHub - authenticated push channels to browser sessions.

Every connection presents a bearer token; the hub verifies it, resolves
the account through the DatabaseFacade, and rejects missing or disabled
accounts. Accepted sessions are auto-joined to `role:<role>` and
`account:<id>` and may join/leave other named rooms.

Delivery is fire-and-forget and at-most-once: emitters schedule a task
and return immediately; a session that is gone when the task runs simply
misses the event. Every frame looks like

    {"event": "ticket:updated", "type": "ticket_updated",
     "data": {...}, "timestamp": "2026-01-01T10:00:00+00:00"}
"""

import asyncio
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from parceldesk.db.adapter import ChangeEvent
from parceldesk.db.facade import DatabaseFacade
from parceldesk.errors import AuthenticationError, ConnectivityError, DataError, PermissionDenied
from parceldesk.models import BroadcastLog, DashboardStats, Role, Ticket, new_id, utc_now
from parceldesk.realtime.tokens import TokenVerifier

logger = logging.getLogger(__name__)

# RFC 6455 close codes
POLICY_VIOLATION = 1008
TRY_AGAIN_LATER = 1013

RESERVED_ROOM_PREFIXES = ("role:", "account:")
MAX_ROOM_NAME = 128


class Connection(Protocol):
    """What the hub needs from a socket (FastAPI's WebSocket fits)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


@dataclass(eq=False)
class Session:
    connection_id: str
    account_id: str
    role: Role
    connection: Connection
    rooms: set[str] = field(default_factory=set)


def role_room(role: str) -> str:
    return f"role:{role}"


def account_room(account_id: str) -> str:
    return f"account:{account_id}"


class RealtimeHub:
    """Session registry, room membership, and scoped fan-out."""

    def __init__(self, db: DatabaseFacade, verifier: TokenVerifier, send_timeout_seconds: float = 5.0):
        self.db = db
        self.verifier = verifier
        self.send_timeout_seconds = send_timeout_seconds
        self._sessions: dict[str, Session] = {}
        self._rooms: dict[str, set[str]] = {}
        self._pending: set[asyncio.Task] = set()
        self._feed_handles: list[Any] = []

    # =========================================================================
    # Sessions
    # =========================================================================

    async def handshake(self, connection: Connection, token: str) -> Session:
        """
        Authenticate a connection and register its session.

        On any failure the connection is closed with a reason starting with
        "Authentication error" and AuthenticationError is raised; nothing
        is registered. Backend outages close with 1013 (transient) so
        clients can tell them apart from bad credentials (1008).
        """
        try:
            account_id = self.verifier.account_id(token)
            try:
                account = await self.db.get_account_by_id(account_id, use_cache=False)
            except ConnectivityError as e:
                raise AuthenticationError("Account lookup unavailable, retry later", transient=True) from e
            except DataError as e:
                raise AuthenticationError(f"Account lookup failed ({e})") from e
            if account is None:
                raise AuthenticationError("User not found")
            if not account.active:
                raise AuthenticationError("Account disabled")
        except AuthenticationError as e:
            logger.warning(f"Realtime handshake rejected: {e}")
            await self._close(connection, TRY_AGAIN_LATER if e.transient else POLICY_VIOLATION, str(e))
            raise

        session = Session(
            connection_id=new_id(),
            account_id=account.id,
            role=account.role,
            connection=connection,
        )
        self._sessions[session.connection_id] = session
        self._join(session, role_room(account.role))
        self._join(session, account_room(account.id))
        logger.info(f"Realtime session {session.connection_id} connected: {account.email} ({account.role})")

        await self._send(session, {
            "event": "connected",
            "message": "Connected to real-time updates",
            "userId": account.id,
            "role": account.role,
        })
        return session

    def disconnect(self, session: Session) -> None:
        """Forget a session and release every room membership."""
        if self._sessions.pop(session.connection_id, None) is None:
            return
        for room in list(session.rooms):
            self._leave(session, room)
        logger.info(f"Realtime session {session.connection_id} disconnected ({session.account_id})")

    def join_room(self, session: Session, room: str) -> None:
        self._check_room(session, room)
        self._join(session, room)
        logger.info(f"Session {session.connection_id} joined {room}")

    def leave_room(self, session: Session, room: str) -> None:
        self._check_room(session, room)
        self._leave(session, room)
        logger.info(f"Session {session.connection_id} left {room}")

    def _check_room(self, session: Session, room: str) -> None:
        if not isinstance(room, str) or not room.strip() or len(room) > MAX_ROOM_NAME:
            raise PermissionDenied(f"Invalid room name: {room!r}")
        # Role/account rooms are managed by the hub
        if room.startswith(RESERVED_ROOM_PREFIXES):
            raise PermissionDenied(f"Room {room} is managed by the server")

    def _join(self, session: Session, room: str) -> None:
        self._rooms.setdefault(room, set()).add(session.connection_id)
        session.rooms.add(room)

    def _leave(self, session: Session, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(session.connection_id)
            if not members:
                del self._rooms[room]
        session.rooms.discard(room)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def members(self, room: str) -> list[Session]:
        return [self._sessions[cid] for cid in self._rooms.get(room, ()) if cid in self._sessions]

    def rooms(self) -> dict[str, int]:
        return {room: len(members) for room, members in self._rooms.items()}

    # =========================================================================
    # Delivery
    # =========================================================================

    def broadcast_event(self, event: str, data: Any, type: str | None = None) -> asyncio.Task | None:
        """Deliver to every connected session."""
        return self._deliver(self.sessions(), self._frame(event, data, type))

    def notify_account(self, account_id: str, data: Any, event: str = "notification") -> asyncio.Task | None:
        return self._deliver(self.members(account_room(account_id)), self._frame(event, data, "notification"))

    def notify_role(self, role: str, data: Any, event: str = "notification") -> asyncio.Task | None:
        return self._deliver(self.members(role_room(role)), self._frame(event, data, "role_notification"))

    def emit_to_rooms(self, rooms: Iterable[str], event: str, data: Any, type: str | None = None) -> asyncio.Task | None:
        """Deliver once to each session that is in any of `rooms`."""
        targets: dict[str, Session] = {}
        for room in rooms:
            for session in self.members(room):
                targets[session.connection_id] = session
        return self._deliver(list(targets.values()), self._frame(event, data, type))

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def _frame(self, event: str, data: Any, type: str | None) -> dict[str, Any]:
        return {
            "event": event,
            "type": type or event,
            "data": jsonable_encoder(data),
            "timestamp": utc_now().isoformat(),
        }

    def _deliver(self, targets: list[Session], frame: dict[str, Any]) -> asyncio.Task | None:
        if not targets:
            return None
        return self._schedule(self._fan_out(targets, frame))

    def _schedule(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _fan_out(self, targets: list[Session], frame: dict[str, Any]) -> None:
        # Sessions disconnected between scheduling and delivery miss the frame
        live = [session for session in targets if session.connection_id in self._sessions]
        await asyncio.gather(*(self._send(session, frame) for session in live))

    async def _send(self, session: Session, frame: dict[str, Any]) -> bool:
        try:
            async with asyncio.timeout(self.send_timeout_seconds):
                await session.connection.send_json(frame)
            return True
        except Exception as e:
            logger.info(f"Dropping realtime session {session.connection_id}: send failed ({e!r})")
            self.disconnect(session)
            return False

    async def _close(self, connection: Connection, code: int, reason: str) -> None:
        try:
            await connection.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Closing rejected connection failed: {e!r}")

    # -------------------------------------------------------------------------
    # Domain emitters
    # -------------------------------------------------------------------------

    def ticket_created(self, ticket: Ticket) -> asyncio.Task | None:
        rooms = [role_room("admin")]
        if ticket.assigned_account_id:
            rooms.append(account_room(ticket.assigned_account_id))
        return self.emit_to_rooms(rooms, "ticket:created", {"ticket": ticket}, type="ticket_created")

    def ticket_updated(self, ticket: Ticket, previous_assignee: str | None = None) -> asyncio.Task | None:
        """Admins, the assignee, and a previous assignee who just lost the ticket."""
        rooms = [role_room("admin")]
        for account_id in (ticket.assigned_account_id, previous_assignee):
            if account_id:
                rooms.append(account_room(account_id))
        return self.emit_to_rooms(rooms, "ticket:updated", {"ticket": ticket}, type="ticket_updated")

    def broadcast_log_updated(self, log: BroadcastLog) -> asyncio.Task | None:
        return self.broadcast_event("broadcast:updated", {"broadcast": log}, type="broadcast_updated")

    def dashboard_updated(self, stats: DashboardStats) -> asyncio.Task | None:
        return self.broadcast_event("dashboard:updated", stats, type="dashboard_updated")

    def refresh_dashboard(self) -> asyncio.Task | None:
        """
        Recompute dashboard stats in the background and push them.

        The caller never waits on the aggregate; when it fails the refresh
        is skipped and the next write tries again.
        """
        if not self._sessions:
            return None
        return self._schedule(self._refresh_dashboard())

    async def _refresh_dashboard(self) -> None:
        try:
            stats = await self.db.get_dashboard_stats()
        except DataError as e:
            logger.warning(f"Dashboard refresh skipped: {e}")
            return
        self.dashboard_updated(stats)

    def update(self, kind: str, data: Any) -> asyncio.Task | None:
        """Generic `update` event for anything without a dedicated name."""
        return self.broadcast_event("update", data, type=kind)

    # =========================================================================
    # Websocket endpoint
    # =========================================================================

    async def serve(self, websocket: WebSocket, handshake_timeout: float = 10.0) -> None:
        """
        Run one websocket connection end to end.

        The token comes from `?token=` or from a first message
        {"auth": {"token": "..."}}. After the handshake the client may send
        {"action": "join-room" | "leave-room", "room": "..."} or "ping".
        """
        await websocket.accept()

        token = websocket.query_params.get("token")
        if not token:
            try:
                async with asyncio.timeout(handshake_timeout):
                    first = await websocket.receive_text()
            except TimeoutError:
                first = ""
            except WebSocketDisconnect:
                return
            token = _token_from_message(first)

        try:
            session = await self.handshake(websocket, token or "")
        except AuthenticationError:
            return

        try:
            while True:
                raw = await websocket.receive_text()
                reply = self._handle_client_message(session, raw)
                if reply is not None:
                    await self._send(session, reply)
        except WebSocketDisconnect:
            pass
        finally:
            self.disconnect(session)

    def _handle_client_message(self, session: Session, raw: str) -> dict[str, Any] | None:
        if raw == "ping":
            return {"event": "pong"}
        try:
            message = json.loads(raw)
        except ValueError:
            return {"event": "error", "message": "Messages must be JSON"}
        if not isinstance(message, dict):
            return {"event": "error", "message": "Messages must be JSON objects"}

        action = message.get("action")
        room = message.get("room")
        try:
            match action:
                case "join-room":
                    self.join_room(session, room)
                    return {"event": "room-joined", "room": room}
                case "leave-room":
                    self.leave_room(session, room)
                    return {"event": "room-left", "room": room}
                case "ping":
                    return {"event": "pong"}
        except PermissionDenied as e:
            return {"event": "error", "message": str(e)}
        return {"event": "error", "message": f"Unknown action: {action!r}"}

    # =========================================================================
    # Backend change relay
    # =========================================================================

    async def relay_changes(self) -> bool:
        """
        Forward backend row changes (writes made outside this process) to
        sessions. Returns False when the active backend has no change feed.
        """
        if not self.db.supports("change_feed"):
            logger.info(f"{self.db.backend_kind} backend has no change feed; realtime relay disabled")
            return False
        self._feed_handles.append(await self.db.subscribe("tickets", self._on_ticket_change))
        self._feed_handles.append(await self.db.subscribe("broadcast_logs", self._on_broadcast_change))
        logger.info("Relaying backend changes to realtime sessions")
        return True

    async def stop_relay(self) -> None:
        while self._feed_handles:
            await self.db.unsubscribe(self._feed_handles.pop())

    def _on_ticket_change(self, change: ChangeEvent) -> None:
        rooms = [role_room("admin")]
        if change.record.get("assigned_account_id"):
            rooms.append(account_room(change.record["assigned_account_id"]))
        if change.event == "INSERT":
            self.emit_to_rooms(rooms, "ticket:created", {"ticket": change.record}, type="ticket_created")
        else:
            self.emit_to_rooms(rooms, "ticket:updated", {"ticket": change.record, "change": change.event}, type="ticket_updated")

    def _on_broadcast_change(self, change: ChangeEvent) -> None:
        self.broadcast_event("broadcast:updated", {"broadcast": change.record, "change": change.event}, type="broadcast_updated")


def _token_from_message(raw: str) -> str | None:
    try:
        message = json.loads(raw) if raw else None
    except ValueError:
        return None
    if not isinstance(message, dict):
        return None
    auth = message.get("auth")
    if isinstance(auth, dict) and isinstance(auth.get("token"), str):
        return auth["token"]
    token = message.get("token")
    return token if isinstance(token, str) else None
