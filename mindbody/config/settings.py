"""
Configuration settings for the Mindbody integration.
Manages environment variables and default values.
"""

from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings


DEFAULT_WEBHOOK_EVENTS = [
    # Appointment events
    "appointment.created",
    "appointment.updated",
    "appointment.cancelled",
    "appointmentAddOn.created",
    "appointmentAddOn.deleted",
    "appointmentBooking.updated",
    # Class events
    "class.created",
    "class.updated",
    "class.cancelled",
    "classBooking.created",
    "classBooking.cancelled",
    "classBooking.updated",
    # Client events
    "client.created",
    "client.updated",
    "client.deactivated",
    # Sale events
    "sale.created",
    "sale.updated",
    # Contract events
    "contract.created",
    "contract.updated",
    # Staff events
    "staff.created",
    "staff.updated",
    # Site events
    "site.updated",
]


class Settings(BaseSettings):
    """Mindbody integration configuration."""

    # Public API settings
    api_base_url: str = "https://api.mindbodyonline.com/public/v6"
    api_key: Optional[str] = None
    site_id: Optional[str] = None
    staff_username: Optional[str] = None
    staff_password: Optional[str] = None

    # HTTP client settings (seconds, except retry delay in milliseconds)
    api_timeout: float = 30
    api_connect_timeout: float = 10
    api_retry_times: int = 3
    api_retry_delay: int = 1000

    # Webhooks API settings
    webhooks_enabled: bool = True
    webhooks_base_url: str = "https://api.mindbodyonline.com/push/api/v1"
    webhooks_api_key: Optional[str] = None
    webhooks_signature_key: Optional[str] = None
    webhook_url: Optional[str] = None
    verify_webhook_signature: bool = True
    webhooks_auto_cleanup: bool = False
    subscription_cache_ttl: int = 300

    # Webhook receiver settings
    webhook_route_prefix: str = "/mindbody/webhooks"
    webhooks_expose_stats: bool = False
    webhook_test_allowed_ips: List[str] = ["127.0.0.1", "::1"]
    webhook_events: List[str] = list(DEFAULT_WEBHOOK_EVENTS)
    queue_webhooks: bool = True
    webhook_workers: int = 1

    # Webhook retry settings
    webhook_max_retry_attempts: int = 3
    webhook_retry_delay: int = 5
    webhook_exponential_backoff: bool = True
    # None keeps exponential growth uncapped
    webhook_max_retry_delay: Optional[int] = None

    # Cache settings
    cache_prefix: str = "mindbody"

    # Database settings
    db_url: str = "sqlite+aiosqlite:///data/mindbody.db"
    db_auto_create: bool = True
    webhook_events_retention_days: int = 30
    failed_webhook_events_retention_days: int = 90
    api_tokens_retention_days: int = 7

    # Webhook server settings
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 8000
    webhook_reload: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_to_file: bool = True
    log_dir: str = "logs"

    class Config:
        env_prefix = "MINDBODY_"
        env_file = ".env"
        case_sensitive = False


# Find .env file relative to this settings.py file
def find_env_file():
    """Find .env file in project root."""
    current_file = Path(__file__)
    project_root = current_file.parent.parent.parent  # Go up to project root
    env_file = project_root / ".env"
    return str(env_file) if env_file.exists() else None


# Global settings instance with explicit env file path
env_file_path = find_env_file()
if env_file_path:
    settings = Settings(_env_file=env_file_path)
else:
    settings = Settings()
