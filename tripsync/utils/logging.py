"""Structured logging for fetches and mutations."""

import logging
from typing import Any

from tripsync.cache.keys import CacheKey

logger = logging.getLogger(__name__)


class SyncLogger:
    """Interface for structured logging."""

    def log_fetch(
        self,
        key: CacheKey,
        attempt: int,
        outcome: str,
        latency_ms: float,
        error_reason: str | None = None,
    ) -> None:
        """Log a reconciliation fetch attempt."""
        pass

    def log_mutation(
        self,
        mutation_id: str,
        resource: str,
        kind: str,
        outcome: str,
        latency_ms: float,
        error_reason: str | None = None,
    ) -> None:
        """Log a settled mutation."""
        pass


class StructuredSyncLogger(SyncLogger):
    """Structured logger passing fields through the ``structured`` extra."""

    def log_fetch(
        self,
        key: CacheKey,
        attempt: int,
        outcome: str,
        latency_ms: float,
        error_reason: str | None = None,
    ) -> None:
        """Log a reconciliation fetch attempt with structured data."""
        log_data: dict[str, Any] = {
            "resource": key.resource.value,
            "owner_id": key.owner_id,
            "filtered": key.is_filtered,
            "attempt": attempt,
            "outcome": outcome,
            "latency_ms": round(latency_ms, 2),
        }

        if error_reason:
            log_data["error_reason"] = error_reason

        log_msg = f"Fetch: {key} - {outcome}"

        if outcome == "success":
            logger.info(log_msg, extra={"structured": log_data})
        else:
            logger.warning(log_msg, extra={"structured": log_data})

    def log_mutation(
        self,
        mutation_id: str,
        resource: str,
        kind: str,
        outcome: str,
        latency_ms: float,
        error_reason: str | None = None,
    ) -> None:
        """Log a settled mutation with structured data."""
        log_data: dict[str, Any] = {
            "mutation_id": mutation_id,
            "resource": resource,
            "kind": kind,
            "outcome": outcome,
            "latency_ms": round(latency_ms, 2),
        }

        if error_reason:
            log_data["error_reason"] = error_reason

        log_msg = f"Mutation: {kind} {resource} - {outcome}"

        if outcome in ("committed", "duplicate"):
            logger.info(log_msg, extra={"structured": log_data})
        else:
            logger.warning(log_msg, extra={"structured": log_data})
