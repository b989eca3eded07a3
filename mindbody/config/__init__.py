from .settings import DEFAULT_WEBHOOK_EVENTS, Settings, settings

__all__ = ["DEFAULT_WEBHOOK_EVENTS", "Settings", "settings"]
