"""Record store module."""

from pathlib import Path

from wa_gateway.config.schema import Config
from wa_gateway.store.base import (
    ConversationSummary,
    Direction,
    MessageRecord,
    PersistenceError,
    RecordStore,
    summarize_conversations,
)
from wa_gateway.store.credentials import CredentialStore
from wa_gateway.store.json_store import JsonFileStore
from wa_gateway.store.memory import MemoryStore
from wa_gateway.store.rest import RestStore


def create_store(config: Config) -> RecordStore:
    """Create the record store selected by ``store.backend``."""
    backend = config.store.backend
    if backend == "memory":
        return MemoryStore()
    if backend == "rest":
        return RestStore(config.store)
    return JsonFileStore(Path(config.get_data_dir()))


__all__ = [
    "ConversationSummary",
    "CredentialStore",
    "Direction",
    "JsonFileStore",
    "MemoryStore",
    "MessageRecord",
    "PersistenceError",
    "RecordStore",
    "RestStore",
    "create_store",
    "summarize_conversations",
]
