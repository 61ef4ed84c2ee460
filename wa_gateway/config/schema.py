"""Configuration schema for wa-gateway."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


# ============================================================================
# Protocol engine
# ============================================================================

class EngineConfig(BaseModel):
    """Connection settings for the protocol engine bridge."""
    model_config = {"extra": "ignore"}

    mode: Literal["bridge"] = "bridge"
    bridge_url: str = "ws://localhost:3002"
    bridge_token: str = ""
    browser: list[str] = Field(default_factory=lambda: ["Hoomi CRM", "Safari", "1.0.0"])
    connect_timeout_s: float = 15.0


# ============================================================================
# Record store
# ============================================================================

class StoreConfig(BaseModel):
    model_config = {"extra": "ignore"}

    backend: Literal["json", "rest", "memory"] = "json"
    data_dir: str = ""  # json backend, defaults to ~/.wa-gateway/data

    # rest backend (PostgREST / Supabase)
    rest_url: str = ""
    rest_key: str = ""
    timeout_s: float = 10.0
    sessions_table: str = "whatsapp_sessions"
    messages_table: str = "whatsapp_messages"
    credentials_table: str = "whatsapp_credentials"
    leads_table: str = "leads"


# ============================================================================
# Lifecycle / reconnection
# ============================================================================

class LifecycleConfig(BaseModel):
    """Reconnection policy settings.

    Delays are in seconds. ``max_retries`` bounds consecutive automatic
    reconnects that never reach a connected state; 0 means unlimited.
    """
    model_config = {"extra": "ignore"}

    reconnect_delay_s: float = 3.0
    stalled_retry_delay_s: float = 5.0
    backoff_factor: float = 2.0
    max_reconnect_delay_s: float = 60.0
    max_retries: int = 0


# ============================================================================
# Message relay
# ============================================================================

class RelayConfig(BaseModel):
    model_config = {"extra": "ignore"}

    default_domain: str = "s.whatsapp.net"
    create_leads: bool = True
    lead_source: str = "whatsapp"
    lead_status: str = "prospecto"
    default_lead_name: str = "Contacto"


# ============================================================================
# Notification server
# ============================================================================

class NotifyConfig(BaseModel):
    model_config = {"extra": "ignore"}

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 3001
    queue_size: int = 100


# ============================================================================
# Root config
# ============================================================================

class Config(BaseSettings):
    """wa-gateway root configuration."""

    model_config = {
        "env_prefix": "WA_GATEWAY_",
        "env_nested_delimiter": "__",
        "extra": "ignore",
    }

    engine: EngineConfig = Field(default_factory=EngineConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)

    # Logging
    log_level: str = "INFO"
    log_file: str = ""

    def get_data_dir(self) -> str:
        """Get the data directory for the json store.

        Uses store.data_dir when set, otherwise ~/.wa-gateway/data
        """
        if self.store and self.store.data_dir:
            return self.store.data_dir
        return str(Path.home() / ".wa-gateway" / "data")
