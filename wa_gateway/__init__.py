"""wa-gateway - Per-tenant WhatsApp session gateway for CRM advisors."""

__version__ = "0.1.0"
__logo__ = "📱"

from wa_gateway.bus.queue import EventBus
from wa_gateway.session.manager import SessionManager

__all__ = [
    "__version__",
    "__logo__",
    "EventBus",
    "SessionManager",
]
