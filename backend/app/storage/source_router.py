"""
source_router.py - Primary-first, secondary-fallback routing for every
storage operation.

═══════════════════════════════════════════════════════════════════════════
POLICY
═══════════════════════════════════════════════════════════════════════════

    read(op) / write(op):
        1. primary.execute(op)     bounded by STORAGE_TIMEOUT_SECONDS
        2. on BackendUnavailableError or timeout → secondary.execute(op)
        3. both failed → StorageUnavailableError

    • Primary is always tried first, for reads and writes alike.
    • No mirroring: a primary success is not copied to the secondary, and a
      secondary write made during a primary outage is never replayed. That
      divergence is logged at WARNING and left alone.
    • A missing record or a lost compare-and-set is a result, not a
      failure, so it never triggers fallback.
    • Results are normalised to canonical snake_case records with parsed
      timestamps regardless of which backend answered.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from backend.app.core.errors import BackendUnavailableError, StorageUnavailableError
from backend.app.storage.backend import StorageBackend
from backend.app.storage.operations import StorageOp, normalize

logger = logging.getLogger(__name__)


@dataclass
class BackendStats:
    """Per-backend counters, exposed through the health check."""
    name: str
    successes: int = 0
    failures: int = 0
    last_error: Optional[str] = None
    last_failure_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "successes": self.successes,
            "failures": self.failures,
            "last_error": self.last_error,
        }


@dataclass
class RouterStats:
    fallback_reads: int = 0
    fallback_writes: int = 0
    backends: Dict[str, BackendStats] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fallback_reads": self.fallback_reads,
            "fallback_writes": self.fallback_writes,
            "backends": [b.to_dict() for b in self.backends.values()],
        }


class SourceRouter:
    """
    Routes ``StorageOp`` descriptors to the primary backend, falling back
    to the secondary.

    Parameters
    ----------
    primary : StorageBackend
    secondary : StorageBackend | None
        Without a secondary, a primary failure raises immediately.
    timeout_seconds : float
        Upper bound for one backend call.

    Examples
    --------
    >>> router = SourceRouter(MemoryBackend())
    >>> await router.read(ops.get_alert("ALR-0123"))
    """

    def __init__(
        self,
        primary: StorageBackend,
        secondary: Optional[StorageBackend] = None,
        *,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.timeout_seconds = timeout_seconds
        self.stats = RouterStats()
        for backend in self.backends:
            self.stats.backends[backend.name] = BackendStats(name=backend.name)

    @property
    def backends(self) -> List[StorageBackend]:
        return [b for b in (self.primary, self.secondary) if b is not None]

    async def read(self, op: StorageOp) -> Any:
        if op.is_write:
            raise ValueError(f"'{op.name}' is a write; use SourceRouter.write")
        return await self._route(op)

    async def write(self, op: StorageOp) -> Any:
        if not op.is_write:
            raise ValueError(f"'{op.name}' is a read; use SourceRouter.read")
        return await self._route(op)

    async def _route(self, op: StorageOp) -> Any:
        failures: List[str] = []

        for position, backend in enumerate(self.backends):
            stats = self.stats.backends[backend.name]
            start = time.perf_counter()
            try:
                result = await asyncio.wait_for(
                    backend.execute(op), timeout=self.timeout_seconds
                )
            except asyncio.TimeoutError:
                reason = f"timed out after {self.timeout_seconds:.1f}s"
            except BackendUnavailableError as exc:
                reason = exc.message
            else:
                stats.successes += 1
                if position > 0:
                    self._note_fallback(op, backend, failures)
                return normalize(result)

            stats.failures += 1
            stats.last_error = reason
            stats.last_failure_at = time.time()
            failures.append(f"{backend.name}: {reason}")
            logger.warning(
                "Storage backend %s failed on %s (%.1fms): %s",
                backend.name, op.name, (time.perf_counter() - start) * 1000, reason,
                extra={"backend": backend.name, "operation": op.name},
            )

        logger.error(
            "All storage backends failed on %s", op.name,
            extra={"operation": op.name},
        )
        raise StorageUnavailableError(op.name, failures)

    def _note_fallback(self, op: StorageOp, backend: StorageBackend, failures: List[str]) -> None:
        if op.is_write:
            self.stats.fallback_writes += 1
            logger.warning(
                "Write %s served by %s; primary is now behind and will not be "
                "reconciled (%s)",
                op.name, backend.name, "; ".join(failures),
                extra={"backend": backend.name, "operation": op.name},
            )
        else:
            self.stats.fallback_reads += 1
            logger.info(
                "Read %s served by %s", op.name, backend.name,
                extra={"backend": backend.name, "operation": op.name},
            )

    async def probe(self) -> Dict[str, bool]:
        """Ping every backend concurrently; used by the health check."""
        async def _one(backend: StorageBackend) -> bool:
            try:
                return await asyncio.wait_for(backend.ping(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                return False

        results = await asyncio.gather(*(_one(b) for b in self.backends))
        return {b.name: ok for b, ok in zip(self.backends, results)}

    async def close(self) -> None:
        for backend in self.backends:
            await backend.close()
