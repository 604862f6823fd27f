"""
ParcelDesk data layer.

DatabaseFacade picks one backend at startup (relational, document store,
or in-memory fixtures) and exposes a single entity-operation contract.
"""

from parceldesk.db.adapter import (
    BackendAdapter,
    ChangeEvent,
    SupportsChangeFeed,
    SupportsRawQuery,
    TicketTransition,
)
from parceldesk.db.cache import ResultCache
from parceldesk.db.facade import DatabaseFacade
from parceldesk.db.filters import FilterClause, ListQuery

__all__ = [
    "BackendAdapter",
    "ChangeEvent",
    "DatabaseFacade",
    "FilterClause",
    "ListQuery",
    "ResultCache",
    "SupportsChangeFeed",
    "SupportsRawQuery",
    "TicketTransition",
]
