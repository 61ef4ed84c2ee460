"""Notification transport module."""

from wa_gateway.notify.server import NotificationServer, encode_event, tenant_from_path

__all__ = ["NotificationServer", "encode_event", "tenant_from_path"]
