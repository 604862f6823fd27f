"""
Seed data for the fixture backend.

Two admins, one agent, two tickets assigned to the agent, two delivered
broadcasts. Every seeded account's password is "admin123".
"""

from datetime import datetime, timedelta
from typing import Any

from parceldesk.models import BroadcastCounts, TicketCounts, UserCounts, utc_now

ADMIN_ID = "550e8400-e29b-41d4-a716-446655440000"
AGENT_ID = "550e8400-e29b-41d4-a716-446655440001"
LOGISTICS_ADMIN_ID = "550e8400-e29b-41d4-a716-446655440002"

SEED_PASSWORD_HASH = "$2b$10$lgs2E2khBbcz91ImcfHVpedN4EiD8bagksebDTim.uOUmdYSXeCQ6"

# Returned by the fixture backend instead of computed aggregates
CANNED_TICKET_COUNTS = TicketCounts(total_tickets=10, open_tickets=3, pending_tickets=2, closed_tickets=5)
CANNED_BROADCAST_COUNTS = BroadcastCounts.from_totals(total=25, success=20, failed=5, pending=0)
CANNED_USER_COUNTS = UserCounts(total_users=3, active_agents=1, active_admins=2)


def _account(account_id: str, name: str, email: str, role: str, now: datetime) -> dict[str, Any]:
    return {
        "id": account_id,
        "display_name": name,
        "email": email,
        "credential_hash": SEED_PASSWORD_HASH,
        "role": role,
        "active": True,
        "created_at": now,
        "updated_at": now,
    }


def seed_rows(now: datetime | None = None) -> dict[str, list[dict[str, Any]]]:
    """Fresh seed rows per table, timestamped relative to `now`."""
    now = now or utc_now()
    return {
        "accounts": [
            _account(ADMIN_ID, "Administrator", "admin@example.com", "admin", now),
            _account(LOGISTICS_ADMIN_ID, "Admin Logistik", "admin@logistik.com", "admin", now),
            _account(AGENT_ID, "Agent Satu", "agent1@example.com", "agent", now),
        ],
        "tickets": [
            {
                "id": "550e8400-e29b-41d4-a716-446655440020",
                "human_uid": "CS-2024-0001",
                "tracking_ref": "TRK001234567",
                "customer_contact": "+6281234567890",
                "subject": "Paket belum sampai",
                "description": "Paket dengan nomor resi TRK001234567 sudah 3 hari belum sampai ke alamat tujuan",
                "status": "open",
                "priority": "high",
                "assigned_account_id": AGENT_ID,
                "created_at": now - timedelta(minutes=30),
                "updated_at": now - timedelta(minutes=30),
                "closed_at": None,
            },
            {
                "id": "550e8400-e29b-41d4-a716-446655440021",
                "human_uid": "CS-2024-0002",
                "tracking_ref": "TRK001234568",
                "customer_contact": "+6281234567891",
                "subject": "Paket rusak",
                "description": "Paket diterima dalam kondisi rusak",
                "status": "pending",
                "priority": "medium",
                "assigned_account_id": AGENT_ID,
                "created_at": now - timedelta(minutes=10),
                "updated_at": now - timedelta(minutes=10),
                "closed_at": None,
            },
        ],
        "ticket_comments": [],
        "broadcast_logs": [
            {
                "id": "550e8400-e29b-41d4-a716-446655440010",
                "tracking_ref": "TRK001234567",
                "recipient_contact": "+6281234567890",
                "status": "success",
                "message_body": "Paket Anda dengan nomor resi TRK001234567 sedang dalam perjalanan",
                "error_detail": None,
                "broadcast_at": now - timedelta(hours=2),
                "created_at": now - timedelta(hours=2),
            },
            {
                "id": "550e8400-e29b-41d4-a716-446655440011",
                "tracking_ref": "TRK001234568",
                "recipient_contact": "+6281234567891",
                "status": "success",
                "message_body": "Paket Anda dengan nomor resi TRK001234568 telah sampai di kota tujuan",
                "error_detail": None,
                "broadcast_at": now - timedelta(hours=1),
                "created_at": now - timedelta(hours=1),
            },
        ],
    }
