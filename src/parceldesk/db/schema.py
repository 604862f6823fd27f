"""
Relational schema (SQLAlchemy Core).

Used by the relational adapter for statements and by create_schema()
to bootstrap an empty Postgres or SQLite database. Document-store
deployments keep the same table and column names in Supabase.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    MetaData,
    String,
    Table,
    Text,
)

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("display_name", String(255), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("credential_hash", String(255), nullable=False),
    Column("role", String(16), nullable=False),
    Column("active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("role IN ('admin', 'agent')", name="accounts_role_check"),
)

tickets = Table(
    "tickets",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("human_uid", String(32), nullable=False, unique=True),
    Column("tracking_ref", String(64)),
    Column("customer_contact", String(64)),
    Column("subject", String(255), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("status", String(16), nullable=False, default="open"),
    Column("priority", String(16), nullable=False, default="medium"),
    Column("assigned_account_id", String(36), ForeignKey("accounts.id")),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("closed_at", DateTime(timezone=True)),
    CheckConstraint("status IN ('open', 'pending', 'on_hold', 'closed')", name="tickets_status_check"),
    CheckConstraint("priority IN ('low', 'medium', 'high', 'urgent')", name="tickets_priority_check"),
    CheckConstraint(
        "(status = 'closed' AND closed_at IS NOT NULL) OR (status <> 'closed' AND closed_at IS NULL)",
        name="tickets_closed_at_check",
    ),
    Index("ix_tickets_status", "status"),
    Index("ix_tickets_assigned_account_id", "assigned_account_id"),
    Index("ix_tickets_tracking_ref", "tracking_ref"),
)

ticket_comments = Table(
    "ticket_comments",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("ticket_id", String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False),
    Column("author_account_id", String(36), ForeignKey("accounts.id", ondelete="SET NULL")),
    Column("text", Text, nullable=False),
    Column("internal", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_ticket_comments_ticket_id", "ticket_id"),
)

broadcast_logs = Table(
    "broadcast_logs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("tracking_ref", String(64), nullable=False),
    Column("recipient_contact", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    Column("message_body", Text, nullable=False),
    Column("error_detail", Text),
    Column("broadcast_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("status IN ('pending', 'success', 'failed')", name="broadcast_logs_status_check"),
    Index("ix_broadcast_logs_tracking_ref", "tracking_ref"),
    Index("ix_broadcast_logs_broadcast_at", "broadcast_at"),
)

TABLES: dict[str, Table] = {
    "accounts": accounts,
    "tickets": tickets,
    "ticket_comments": ticket_comments,
    "broadcast_logs": broadcast_logs,
}
