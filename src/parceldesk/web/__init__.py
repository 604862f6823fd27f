"""ParcelDesk web surface."""

from parceldesk.web.app import create_app

__all__ = ["create_app"]
