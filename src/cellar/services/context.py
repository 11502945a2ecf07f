"""Store context - the explicitly owned handle on persistence.

The application builds one StoreContext at startup, opens it, hands it to
whatever needs persistence and disposes it at shutdown. Nothing in the
package keeps a module-level instance.
"""
from typing import Any, Optional

import structlog

from cellar.store.base import Store

log = structlog.get_logger()


class StoreContext:
    """Store plus named data-access capabilities.

    A capability is any object exposing operations (typically a DAO such
    as ``staff`` or ``venue``). The resilience executors look capabilities
    up by name and fall back when one is missing.

    Usage:
        context = StoreContext(SqliteStore("./data/app.db"))
        context.register("settings", SettingsDAO(context.store))
        await context.open()
        ...
        await context.dispose()
    """

    def __init__(
        self,
        store: Optional[Store] = None,
        capabilities: Optional[dict[str, Any]] = None,
    ) -> None:
        self._store = store
        self._capabilities: dict[str, Any] = dict(capabilities or {})
        self._initialized = False
        self._log = log.bind(component="store_context")

    @property
    def store(self) -> Optional[Store]:
        """The underlying store adapter."""
        return self._store

    @property
    def initialized(self) -> bool:
        """True between a successful open() and dispose()."""
        return self._initialized

    @property
    def capability_names(self) -> list[str]:
        return sorted(self._capabilities)

    def register(self, name: str, capability: Any) -> None:
        """Register a named data-access capability."""
        self._capabilities[name] = capability
        self._log.debug("capability_registered", name=name)

    def unregister(self, name: str) -> None:
        self._capabilities.pop(name, None)

    def has_capability(self, name: str) -> bool:
        return name in self._capabilities

    def capability(self, name: str) -> Optional[Any]:
        """Look up a capability by name; None when absent."""
        return self._capabilities.get(name)

    async def open(self) -> None:
        """Connect the store (if needed) and mark the context usable."""
        if self._store is None:
            raise RuntimeError("StoreContext has no store to open")
        if not self._store.is_connected:
            await self._store.connect()
        self._initialized = True
        self._log.info("store_context_opened", capabilities=self.capability_names)

    async def dispose(self) -> None:
        """Mark the context unusable and close the store."""
        self._initialized = False
        if self._store is not None and self._store.is_connected:
            await self._store.close()
        self._log.info("store_context_disposed")
