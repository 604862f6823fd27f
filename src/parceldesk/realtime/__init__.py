"""Realtime push: token verification and the session hub."""

from parceldesk.realtime.hub import RealtimeHub, Session, account_room, role_room
from parceldesk.realtime.tokens import TokenVerifier, issue_token

__all__ = ["RealtimeHub", "Session", "TokenVerifier", "account_room", "issue_token", "role_room"]
