"""Declarative store error hierarchy.

These errors are small and dependency-free so reconcilers can catch them
without importing httpx or leaking response objects (or bearer tokens).
Every ``StoreError`` is treated as transient by the reconciliation loops:
logged, nothing written, retried next tick.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class StoreError(Exception):
    """Base error for declarative store requests."""

    status_code: int
    message: str
    reason: str | None = None

    def __str__(self) -> str:
        bits: list[str] = [f"StoreError(status={self.status_code})", self.message]
        if self.reason:
            bits.append(f"reason={self.reason}")
        return " ".join(bits)


class StoreAuthError(StoreError):
    """401/403 errors (expired token, missing RBAC verbs)."""


class StoreNotFoundError(StoreError):
    """404 errors (record or resource kind does not exist)."""


class StoreConflictError(StoreError):
    """409 conflicts (record already exists, stale resourceVersion)."""


class StoreUnavailableError(StoreError):
    """Timeouts and transport failures (no HTTP response at all)."""
