"""Bounded retry and in-flight deduplication for remote calls."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import threading
import time
from collections.abc import Awaitable, Callable
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, TypeVar

from ..config import RetryConfig
from ..errors import AuthError, IdempotencyConflict, RemoteServiceError
from .types import FolderContents, RemoteGateway, RemoteObject, RemoteSheet, RowPatch, Webhook

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * multiplier**attempt`` capped at ``max_delay``."""

    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            base_delay=config.base_delay,
            multiplier=config.multiplier,
            max_delay=config.max_delay,
            jitter=config.jitter,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay(self, retry_count: int) -> float:
        """Delay before retry number ``retry_count`` (0-based)."""
        delay = min(self.base_delay * self.multiplier**retry_count, self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay

    def should_retry(self, exc: RemoteServiceError) -> bool:
        if isinstance(exc, AuthError):
            return False
        return exc.retryable


class DedupeGuard:
    """Process-local registry of in-flight operation keys.

    Keys are salted with the issue time (milliseconds), so the guard only
    rejects an identical call issued while the first is still running. It
    gives no cross-process or cross-restart guarantee.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._in_flight: dict[str, float] = {}
        self._lock = threading.Lock()

    def make_key(self, operation: str, params: dict[str, Any], issued_at: int | None = None) -> str:
        if issued_at is None:
            issued_at = int(self._clock() * 1000)
        canonical = json.dumps(params, sort_keys=True, default=str)
        return f"{operation}:{canonical}:{issued_at}"

    def acquire(self, key: str) -> None:
        with self._lock:
            if key in self._in_flight:
                raise IdempotencyConflict(key)
            self._in_flight[key] = self._clock()

    def release(self, key: str) -> None:
        with self._lock:
            self._in_flight.pop(key, None)

    @contextmanager
    def hold(self, key: str) -> Iterator[str]:
        self.acquire(key)
        try:
            yield key
        finally:
            self.release(key)

    @property
    def in_flight(self) -> list[str]:
        with self._lock:
            return list(self._in_flight)


class RetryableRemoteClient:
    """Executes gateway operations with bounded retry and duplicate suppression.

    Callers receive either the successful result or the error from the
    final attempt; intermediate failures are only logged.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        policy: RetryPolicy | None = None,
        guard: DedupeGuard | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.policy = policy or RetryPolicy()
        self.guard = guard or DedupeGuard()
        self._sleep = sleep

    async def execute(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        params: dict[str, Any] | None = None,
        key: str | None = None,
    ) -> T:
        """
        Run ``fn`` with retry.

        Args:
            operation: Operation name (part of the idempotency key and logs)
            fn: Zero-argument coroutine factory, called once per attempt
            params: Parameters identifying the call (part of the idempotency key)
            key: Explicit idempotency key, overriding the derived one

        Raises:
            IdempotencyConflict: If an identical call is already in flight
            RemoteServiceError: The last error once retries are exhausted,
                or immediately for non-retryable errors
        """
        key = key or self.guard.make_key(operation, params or {})
        with self.guard.hold(key):
            max_attempts = self.policy.max_attempts
            for attempt in range(max_attempts):
                try:
                    return await fn()
                except RemoteServiceError as e:
                    if not self.policy.should_retry(e):
                        raise
                    if attempt >= max_attempts - 1:
                        raise

                    delay = self.policy.delay(attempt)
                    logger.warning(
                        f"{operation} failed ({e.status_code}), retry {attempt + 1}/"
                        f"{self.policy.max_retries} in {delay:.1f}s"
                    )
                    await self._sleep(delay)

        # Unreachable: the loop either returns or raises
        raise RemoteServiceError(f"{operation}: max retries exceeded")

    # ==================== Gateway pass-through ====================

    async def get_sheet(self, sheet_id: int) -> RemoteSheet:
        return await self.execute(
            "get_sheet", lambda: self.gateway.get_sheet(sheet_id), {"sheet_id": sheet_id}
        )

    async def add_rows(self, sheet_id: int, rows: list[RowPatch]) -> list[int]:
        return await self.execute(
            "add_rows",
            lambda: self.gateway.add_rows(sheet_id, rows),
            {"sheet_id": sheet_id, "rows": [_patch_params(r) for r in rows]},
        )

    async def update_rows(self, sheet_id: int, rows: list[RowPatch]) -> None:
        await self.execute(
            "update_rows",
            lambda: self.gateway.update_rows(sheet_id, rows),
            {"sheet_id": sheet_id, "rows": [_patch_params(r) for r in rows]},
        )

    async def delete_rows(self, sheet_id: int, row_ids: list[int]) -> None:
        await self.execute(
            "delete_rows",
            lambda: self.gateway.delete_rows(sheet_id, row_ids),
            {"sheet_id": sheet_id, "row_ids": sorted(row_ids)},
        )

    async def create_folder(self, name: str, parent_folder_id: int) -> RemoteObject:
        return await self.execute(
            "create_folder",
            lambda: self.gateway.create_folder(name, parent_folder_id),
            {"name": name, "parent": parent_folder_id},
        )

    async def get_folder(self, folder_id: int) -> FolderContents:
        return await self.execute(
            "get_folder", lambda: self.gateway.get_folder(folder_id), {"folder_id": folder_id}
        )

    async def copy_sheet(self, sheet_id: int, new_name: str, dest_folder_id: int) -> RemoteObject:
        return await self.execute(
            "copy_sheet",
            lambda: self.gateway.copy_sheet(sheet_id, new_name, dest_folder_id),
            {"sheet_id": sheet_id, "name": new_name, "dest": dest_folder_id},
        )

    async def copy_dashboard(
        self, dashboard_id: int, new_name: str, dest_folder_id: int
    ) -> RemoteObject:
        return await self.execute(
            "copy_dashboard",
            lambda: self.gateway.copy_dashboard(dashboard_id, new_name, dest_folder_id),
            {"dashboard_id": dashboard_id, "name": new_name, "dest": dest_folder_id},
        )

    async def create_webhook(self, name: str, sheet_id: int, callback_url: str) -> Webhook:
        return await self.execute(
            "create_webhook",
            lambda: self.gateway.create_webhook(name, sheet_id, callback_url),
            {"name": name, "sheet_id": sheet_id, "callback": callback_url},
        )

    async def enable_webhook(self, webhook_id: int) -> Webhook:
        return await self.execute(
            "enable_webhook",
            lambda: self.gateway.enable_webhook(webhook_id),
            {"webhook_id": webhook_id},
        )

    async def delete_webhook(self, webhook_id: int) -> None:
        await self.execute(
            "delete_webhook",
            lambda: self.gateway.delete_webhook(webhook_id),
            {"webhook_id": webhook_id},
        )

    async def list_webhooks(self) -> list[Webhook]:
        return await self.execute("list_webhooks", self.gateway.list_webhooks)

    async def get_current_user(self) -> str:
        return await self.execute("get_current_user", self.gateway.get_current_user)


def _patch_params(patch: RowPatch) -> dict[str, Any]:
    return {
        "row_id": patch.row_id,
        "parent_id": patch.parent_id,
        "sibling_id": patch.sibling_id,
        "cells": [(c.column_id, c.value) for c in patch.cells],
    }
