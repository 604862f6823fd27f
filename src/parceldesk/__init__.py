"""
ParcelDesk - Customer-service ticketing and broadcast monitoring backend.

Subsystems:
- db: Backend adapters (relational, document store, fixture), query
  translation, result cache, and the process-wide DatabaseFacade
- realtime: Authenticated websocket fan-out of ticket/broadcast events
- desk: Ticket workflows that combine writes with realtime notifications
"""

__version__ = "1.0.0"
