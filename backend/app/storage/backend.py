"""
backend.py - Common interface for storage backends.

A backend executes ``StorageOp`` descriptors. Dispatch is by name:
``alerts.compare_and_set`` runs ``_alerts_compare_and_set(**params)``.

Backends signal "I could not answer" by raising ``BackendUnavailableError``
(the router's fallback trigger). A missing record or a rejected
precondition is a normal result, never an exception.
"""

from __future__ import annotations

from typing import Any

from backend.app.storage.operations import StorageOp


class StorageBackend:
    """Base class; subclasses implement one coroutine per operation."""

    name: str = "backend"

    async def execute(self, op: StorageOp) -> Any:
        handler = getattr(self, "_" + op.name.replace(".", "_"), None)
        if handler is None:
            raise ValueError(f"{type(self).__name__} does not support '{op.name}'")
        return await handler(**op.params)

    async def ping(self) -> bool:
        """Cheap reachability probe used by the health check."""
        return True

    async def close(self) -> None:
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
