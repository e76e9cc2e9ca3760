"""
Broker sync engine.

One call syncs one connection and always leaves exactly one finalized
SyncRun behind:

    ACTIVE -> SYNCING -> (SUCCESS | PARTIAL | FAILED) -> ACTIVE
    ACTIVE -> DISABLED after too many consecutive auth failures

Trades are upserted on (account_id, broker_trade_id) in close-time order,
one transaction per batch, and the watermark only moves past batches that
committed. Fills are read from the connection's pairing cursor, so a
position held across several syncs pairs exactly as it would in a full sync.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from app.cache.rate_limit import MultiWindowRateLimiter, broker_scope, get_rate_limiter
from app.core.config import settings
from app.core.encryption import decrypt_credentials, encrypt_credentials
from app.core.exceptions import NotFoundError, RateLimitError
from app.core.logging import get_logger
from app.repositories import broker_connections_orm as connections_repo
from app.repositories import sync_runs_orm as sync_runs_repo
from app.repositories import trades_orm as trades_repo
from app.repositories.broker_connections_orm import BrokerConnectionRecord
from app.repositories.sync_runs_orm import SyncRunRecord

from .base import BrokerAdapter, FetchedTrades
from .errors import BrokerAuthError, BrokerError, BrokerRateLimitError
from .pairing import PairingCursor
from .registry import get_adapter
from .types import BrokerTrade, ConnectionStatus, SyncStatus, SyncTrigger


logger = get_logger("brokers.sync")


@dataclass
class _Outcome:
    status: SyncStatus = SyncStatus.SUCCESS
    imported: int = 0
    skipped: int = 0
    error_code: Optional[str] = None
    error_detail: Optional[str] = None
    watermark: Optional[datetime] = None
    cursor: Optional[PairingCursor] = None
    auth_failed: bool = False

    def fail(self, code: str, detail: str, auth: bool = False) -> _Outcome:
        self.status = SyncStatus.FAILED
        self.error_code = code
        self.error_detail = detail
        self.auth_failed = auth
        return self


def stale_sync_cutoff(now: datetime | None = None) -> datetime:
    """SYNCING rows not updated since this instant belong to a sync that died."""
    return (now or datetime.now(UTC)) - timedelta(minutes=settings.broker_sync_stale_minutes)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, BrokerError) and exc.retryable


class _BrokerBackoff:
    """Exponential backoff that honours a broker's Retry-After."""

    def __init__(self, initial: float, maximum: float):
        self._exponential = wait_exponential(multiplier=initial, max=maximum)
        self._maximum = maximum

    def __call__(self, retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, BrokerRateLimitError) and exc.retry_after:
            return min(exc.retry_after, self._maximum)
        return self._exponential(retry_state)


class BrokerSyncEngine:
    def __init__(
        self,
        rate_limiter: MultiWindowRateLimiter | None = None,
        adapter_factory: Callable[[str], BrokerAdapter] = get_adapter,
    ):
        self._rate_limiter = rate_limiter
        self._adapter_factory = adapter_factory

    @property
    def rate_limiter(self) -> MultiWindowRateLimiter:
        return self._rate_limiter or get_rate_limiter()

    async def sync_connection(
        self,
        connection_id: int,
        trigger: SyncTrigger = SyncTrigger.SCHEDULED,
        full: bool = False,
    ) -> SyncRunRecord:
        connection = await connections_repo.get_connection(connection_id)
        if connection is None:
            raise NotFoundError(f"Broker connection {connection_id} not found")

        started = time.monotonic()
        run = await sync_runs_repo.create_sync_run(connection.id, connection.broker_type, trigger.value)

        if not await connections_repo.mark_syncing(connection.id, stale_sync_cutoff()):
            outcome = _Outcome().fail(
                "SYNC_IN_PROGRESS" if connection.status != ConnectionStatus.DISABLED.value else "CONNECTION_DISABLED",
                f"Connection is {connection.status}",
            )
            return await self._finalize(run, outcome, started)

        if connection.status == ConnectionStatus.SYNCING.value:
            logger.warning(
                "Reclaimed broker connection left SYNCING by an abandoned sync",
                extra={"connection_id": connection.id, "since": str(connection.updated_at)},
            )

        outcome = _Outcome()
        try:
            await self._sync(connection, outcome, full)
        except Exception as e:
            logger.exception(
                "Broker sync failed unexpectedly",
                extra={"connection_id": connection.id, "broker": connection.broker_type},
            )
            if outcome.imported or outcome.skipped:
                outcome.status = SyncStatus.PARTIAL
                outcome.error_code, outcome.error_detail = "INTERNAL_ERROR", str(e)
            else:
                outcome.fail("INTERNAL_ERROR", str(e))
        finally:
            try:
                await self._release(connection, outcome)
            except Exception:
                logger.exception("Failed to release broker connection", extra={"connection_id": connection.id})

        return await self._finalize(run, outcome, started)

    async def _sync(self, connection: BrokerConnectionRecord, outcome: _Outcome, full: bool) -> None:
        adapter = self._adapter_factory(connection.broker_type)

        credentials = decrypt_credentials(connection.encrypted_credentials)
        if credentials is None:
            outcome.fail("AUTH_ERROR", "Stored credentials could not be decrypted", auth=True)
            return

        if adapter.needs_refresh(credentials, settings.broker_token_refresh_margin):
            try:
                credentials = await self._refresh(adapter, connection, credentials)
            except BrokerError as e:
                outcome.fail("AUTH_EXPIRED", e.message, auth=isinstance(e, BrokerAuthError))
                return

        try:
            await self.rate_limiter.acquire(
                [broker_scope(connection.broker_type)],
                max_wait=settings.broker_rate_limit_max_wait,
            )
        except RateLimitError as e:
            outcome.fail("RATE_LIMITED", e.message)
            return

        since = None
        if not full and connection.sync_watermark is not None:
            since = connection.sync_watermark - timedelta(minutes=settings.broker_sync_overlap_minutes)

        cursor = None if full else PairingCursor.from_dict(connection.pairing_cursor)

        try:
            fetched = await self._fetch(adapter, credentials, connection, since, cursor)
        except BrokerAuthError as e:
            outcome.fail("AUTH_ERROR", e.message, auth=True)
            return
        except BrokerError as e:
            outcome.fail(e.code, e.message)
            return

        await self._import(connection, fetched.trades, outcome)
        # Only a fully imported fetch may move the pairing cursor forward.
        if outcome.status is SyncStatus.SUCCESS:
            outcome.cursor = fetched.cursor

    async def _refresh(
        self, adapter: BrokerAdapter, connection: BrokerConnectionRecord, credentials: dict[str, Any]
    ) -> dict[str, Any]:
        tokens = await adapter.refresh_token(credentials)
        refreshed = tokens.to_credentials()
        await connections_repo.update_connection(
            connection.id,
            encrypted_credentials=encrypt_credentials(refreshed),
            token_expires_at=tokens.expires_at,
        )
        logger.info("Broker token refreshed", extra={"connection_id": connection.id})
        return refreshed

    async def _fetch(
        self,
        adapter: BrokerAdapter,
        credentials: dict[str, Any],
        connection: BrokerConnectionRecord,
        since: Optional[datetime],
        cursor: Optional[PairingCursor],
    ) -> FetchedTrades:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(settings.broker_retry_attempts),
            wait=_BrokerBackoff(settings.broker_retry_initial_delay, settings.broker_retry_max_delay),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "Retrying broker fetch",
                        extra={"connection_id": connection.id, "attempt": attempt.retry_state.attempt_number},
                    )
                return await adapter.fetch_trades(credentials, connection.account_id, since, cursor)
        raise AssertionError("unreachable")

    async def _import(
        self, connection: BrokerConnectionRecord, trades: list[BrokerTrade], outcome: _Outcome
    ) -> None:
        ordered = sorted(trades, key=lambda t: (t.closed_at, t.broker_trade_id))
        batch_size = settings.broker_sync_batch_size

        for start in range(0, len(ordered), batch_size):
            batch = ordered[start:start + batch_size]
            rows = [
                trades_repo.trade_row(
                    user_id=connection.user_id,
                    connection_id=connection.id,
                    broker_type=connection.broker_type,
                    account_id=connection.account_id,
                    trade=trade,
                )
                for trade in batch
            ]
            try:
                result = await trades_repo.upsert_trades(rows)
            except Exception as e:
                logger.exception(
                    "Trade batch failed, stopping sync",
                    extra={"connection_id": connection.id, "batch_start": start},
                )
                committed = outcome.imported or outcome.skipped
                outcome.status = SyncStatus.PARTIAL if committed else SyncStatus.FAILED
                outcome.error_code = "BATCH_FAILED"
                outcome.error_detail = str(e)
                return
            outcome.imported += result.inserted
            outcome.skipped += result.updated
            outcome.watermark = batch[-1].closed_at

    async def _release(self, connection: BrokerConnectionRecord, outcome: _Outcome) -> None:
        """Return the connection to ACTIVE (or DISABLED) with the sync outcome."""
        values: dict[str, Any] = {
            "status": ConnectionStatus.ACTIVE.value,
            "last_sync_at": datetime.now(UTC),
            "last_sync_status": outcome.status.value,
            "last_error": outcome.error_detail[:1000] if outcome.error_detail else None,
        }
        if outcome.auth_failed:
            failures = connection.consecutive_auth_failures + 1
            values["consecutive_auth_failures"] = failures
            if failures >= settings.broker_auth_failure_limit:
                values["status"] = ConnectionStatus.DISABLED.value
                logger.warning(
                    "Broker connection disabled after repeated auth failures",
                    extra={"connection_id": connection.id, "failures": failures},
                )
        elif outcome.status is not SyncStatus.FAILED:
            values["consecutive_auth_failures"] = 0

        if outcome.watermark is not None and (
            connection.sync_watermark is None or outcome.watermark > connection.sync_watermark
        ):
            values["sync_watermark"] = outcome.watermark
        if outcome.cursor is not None:
            values["pairing_cursor"] = outcome.cursor.to_dict()

        await connections_repo.update_connection(connection.id, **values)

    async def _finalize(self, run: SyncRunRecord, outcome: _Outcome, started: float) -> SyncRunRecord:
        duration_ms = int((time.monotonic() - started) * 1000)
        finalized = await sync_runs_repo.finalize_sync_run(
            run.id,
            status=outcome.status.value,
            trades_imported=outcome.imported,
            trades_skipped=outcome.skipped,
            error_code=outcome.error_code,
            error_detail=outcome.error_detail,
            duration_ms=duration_ms,
        )
        log = logger.info if outcome.status is SyncStatus.SUCCESS else logger.warning
        log(
            f"Broker sync {outcome.status.value.lower()}",
            extra={
                "sync_run_id": run.id,
                "connection_id": run.connection_id,
                "broker": run.broker_type,
                "imported": outcome.imported,
                "skipped": outcome.skipped,
                "error_code": outcome.error_code,
                "duration_ms": duration_ms,
            },
        )
        return finalized or run


_engine: Optional[BrokerSyncEngine] = None


def get_sync_engine() -> BrokerSyncEngine:
    global _engine
    if _engine is None:
        _engine = BrokerSyncEngine()
    return _engine
