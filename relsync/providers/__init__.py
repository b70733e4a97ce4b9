"""
Provider adapters and the registry that selects one per connection.

The set of providers is closed: a connection naming anything else is
rejected with UnknownProviderError.
"""

from typing import Any, Optional

from relsync.providers.base import (
    ContactPage,
    ProviderAdapter,
    ProviderError,
    PushResult,
    UnknownProviderError,
)
from relsync.providers.file import FileAdapter
from relsync.providers.google import (
    GoogleAdapter,
    GoogleCalendarAdapter,
    GoogleContactsAdapter,
)

ADAPTERS: dict[str, type[ProviderAdapter]] = {
    GoogleAdapter.name: GoogleAdapter,
    GoogleContactsAdapter.name: GoogleContactsAdapter,
    GoogleCalendarAdapter.name: GoogleCalendarAdapter,
    FileAdapter.name: FileAdapter,
}

PROVIDERS = tuple(ADAPTERS)


def get_adapter(
    connection: dict[str, Any], settings: Optional[Any] = None
) -> ProviderAdapter:
    """
    Build the adapter for a connection.

    Raises:
        UnknownProviderError: If the connection's provider is not supported
    """
    provider = connection.get("provider")
    adapter_class = ADAPTERS.get(provider or "")
    if adapter_class is None:
        raise UnknownProviderError(f"Unknown provider: {provider}")
    return adapter_class.from_connection(connection, settings)


__all__ = [
    "ADAPTERS",
    "ContactPage",
    "FileAdapter",
    "GoogleAdapter",
    "GoogleCalendarAdapter",
    "GoogleContactsAdapter",
    "PROVIDERS",
    "ProviderAdapter",
    "ProviderError",
    "PushResult",
    "UnknownProviderError",
    "get_adapter",
]
