"""
Tests for the broker sync engine.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import httpx
import pytest

from app.core.encryption import decrypt_credentials, encrypt_credentials
from app.core.exceptions import NotFoundError
from app.services.brokers.alpaca import AlpacaAdapter
from app.services.brokers.base import BrokerAdapter, FetchedTrades
from app.services.brokers.errors import BrokerApiError, BrokerAuthError, BrokerRateLimitError
from app.services.brokers.pairing import PairingCursor
from app.services.brokers.sync import BrokerSyncEngine
from app.services.brokers.types import (
    AuthKind,
    BrokerAccount,
    BrokerTrade,
    BrokerType,
    OAuthTokens,
    SyncTrigger,
)


T0 = datetime(2026, 1, 20, 15, 0, tzinfo=UTC)


def trade(trade_id: str, minutes: int, pnl: str = "10") -> BrokerTrade:
    return BrokerTrade(
        broker_trade_id=trade_id,
        symbol="AAPL",
        direction="LONG",
        opened_at=T0 + timedelta(minutes=minutes - 5),
        closed_at=T0 + timedelta(minutes=minutes),
        entry_price=Decimal("100"),
        exit_price=Decimal("101"),
        quantity=Decimal("10"),
        realized_pnl=Decimal(pnl),
    )


class FakeAdapter(BrokerAdapter):
    """Adapter that replays scripted fetch results (lists or exceptions)."""

    broker_type = BrokerType.ALPACA
    auth_kind = AuthKind.API_KEY

    def __init__(self, *results):
        super().__init__()
        self.results = list(results)
        self.fetch_calls: list[tuple] = []
        self.cursors: list = []
        self.next_cursor = None
        self.refresh_calls = 0

    async def authenticate(self, credentials):
        return [BrokerAccount(id="ACC1", name="Paper")]

    async def fetch_fills(self, credentials, account_id, start):
        raise AssertionError("trades are scripted")

    async def fetch_trades(self, credentials, account_id, since, cursor=None):
        self.fetch_calls.append((credentials, account_id, since))
        self.cursors.append(cursor)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return FetchedTrades(trades=list(result), cursor=self.next_cursor)


class FakeOAuthAdapter(FakeAdapter):
    broker_type = BrokerType.TRADESTATION
    auth_kind = AuthKind.OAUTH

    def __init__(self, *results, refresh_error=None):
        super().__init__(*results)
        self.refresh_error = refresh_error

    async def refresh_token(self, credentials):
        self.refresh_calls += 1
        if self.refresh_error:
            raise self.refresh_error
        return OAuthTokens(
            access_token="fresh-token",
            refresh_token=credentials["refresh_token"],
            expires_at=datetime.now(UTC) + timedelta(minutes=20),
        )


def engine_for(adapter: BrokerAdapter) -> BrokerSyncEngine:
    return BrokerSyncEngine(adapter_factory=lambda broker_type: adapter)


@pytest.fixture(autouse=True)
def _fast_retries(no_broker_retry_delay):
    pass


class TestSyncConnection:
    @pytest.mark.asyncio
    async def test_first_sync_imports_everything(self, broker_store):
        connection = broker_store.add_connection()
        adapter = FakeAdapter([trade("t2", 20), trade("t1", 10), trade("t3", 30)])

        run = await engine_for(adapter).sync_connection(connection.id)

        assert run.status == "SUCCESS"
        assert run.trigger == "SCHEDULED"
        assert run.trades_imported == 3
        assert run.trades_skipped == 0
        assert run.duration_ms is not None
        assert adapter.fetch_calls[0][1:] == ("ACC1", None)
        assert adapter.fetch_calls[0][0]["api_key"] == "k"

        stored = broker_store.connections[connection.id]
        assert stored.status == "ACTIVE"
        assert stored.sync_watermark == T0 + timedelta(minutes=30)
        assert stored.last_sync_status == "SUCCESS"
        assert set(broker_store.trades) == {("ACC1", "t1"), ("ACC1", "t2"), ("ACC1", "t3")}

    @pytest.mark.asyncio
    async def test_resync_is_idempotent(self, broker_store):
        """Re-importing the same trades updates rows instead of duplicating them."""
        connection = broker_store.add_connection()
        trades = [trade("t1", 10), trade("t2", 20)]
        engine = engine_for(FakeAdapter(trades))

        await engine.sync_connection(connection.id)
        second = await engine.sync_connection(connection.id, SyncTrigger.MANUAL)

        assert second.status == "SUCCESS"
        assert second.trigger == "MANUAL"
        assert second.trades_imported == 0
        assert second.trades_skipped == 2
        assert len(broker_store.trades) == 2

    @pytest.mark.asyncio
    async def test_incremental_sync_starts_before_watermark(self, broker_store):
        from app.core.config import settings

        watermark = T0 + timedelta(hours=1)
        connection = broker_store.add_connection(sync_watermark=watermark)
        adapter = FakeAdapter([])

        await engine_for(adapter).sync_connection(connection.id)

        since = adapter.fetch_calls[0][2]
        assert since == watermark - timedelta(minutes=settings.broker_sync_overlap_minutes)
        assert broker_store.connections[connection.id].sync_watermark == watermark

    @pytest.mark.asyncio
    async def test_full_sync_ignores_watermark(self, broker_store):
        connection = broker_store.add_connection(sync_watermark=T0 + timedelta(hours=1))
        adapter = FakeAdapter([trade("t1", 10)])

        await engine_for(adapter).sync_connection(connection.id, full=True)

        assert adapter.fetch_calls[0][2] is None
        # an older trade never moves the watermark backwards
        assert broker_store.connections[connection.id].sync_watermark == T0 + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_unknown_connection(self, broker_store):
        with pytest.raises(NotFoundError):
            await engine_for(FakeAdapter([])).sync_connection(999)
        assert broker_store.runs == {}

    @pytest.mark.asyncio
    async def test_in_progress_sync_is_rejected(self, broker_store):
        connection = broker_store.add_connection(status="SYNCING")
        adapter = FakeAdapter([trade("t1", 10)])

        run = await engine_for(adapter).sync_connection(connection.id)

        assert run.status == "FAILED"
        assert run.error_code == "SYNC_IN_PROGRESS"
        assert adapter.fetch_calls == []
        assert broker_store.connections[connection.id].status == "SYNCING"

    @pytest.mark.asyncio
    async def test_abandoned_sync_is_reclaimed(self, broker_store):
        """A SYNCING row nobody touched for longer than the stale window is taken over."""
        connection = broker_store.add_connection(status="SYNCING", updated_at=datetime.now(UTC) - timedelta(hours=2))
        adapter = FakeAdapter([trade("t1", 10)])

        run = await engine_for(adapter).sync_connection(connection.id)

        assert run.status == "SUCCESS"
        assert len(adapter.fetch_calls) == 1
        assert broker_store.connections[connection.id].status == "ACTIVE"

    @pytest.mark.asyncio
    async def test_recent_sync_is_not_reclaimed(self, broker_store):
        from app.core.config import settings

        updated_at = datetime.now(UTC) - timedelta(minutes=settings.broker_sync_stale_minutes - 1)
        connection = broker_store.add_connection(status="SYNCING", updated_at=updated_at)
        adapter = FakeAdapter([trade("t1", 10)])

        run = await engine_for(adapter).sync_connection(connection.id)

        assert run.error_code == "SYNC_IN_PROGRESS"
        assert adapter.fetch_calls == []

    @pytest.mark.asyncio
    async def test_disabled_connection_is_rejected(self, broker_store):
        connection = broker_store.add_connection(status="DISABLED")

        run = await engine_for(FakeAdapter([])).sync_connection(connection.id)

        assert run.error_code == "CONNECTION_DISABLED"

    @pytest.mark.asyncio
    async def test_every_sync_leaves_one_finalized_run(self, broker_store):
        connection = broker_store.add_connection()
        engine = engine_for(FakeAdapter(RuntimeError("unexpected"), [trade("t1", 10)]))

        failed = await engine.sync_connection(connection.id)
        succeeded = await engine.sync_connection(connection.id)

        assert failed.status == "FAILED"
        assert failed.error_code == "INTERNAL_ERROR"
        assert succeeded.status == "SUCCESS"
        assert [r.status for r in broker_store.runs.values()] == ["FAILED", "SUCCESS"]
        assert all(r.finished_at is not None for r in broker_store.runs.values())
        assert broker_store.connections[connection.id].status == "ACTIVE"


class TestSyncErrors:
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, broker_store):
        connection = broker_store.add_connection()
        adapter = FakeAdapter(
            BrokerApiError("upstream 502", status_code=502),
            BrokerRateLimitError("slow down", retry_after=1),
            [trade("t1", 10)],
        )

        run = await engine_for(adapter).sync_connection(connection.id)

        assert run.status == "SUCCESS"
        assert len(adapter.fetch_calls) == 3

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, broker_store):
        connection = broker_store.add_connection()
        adapter = FakeAdapter(BrokerApiError("bad request", status_code=400))

        run = await engine_for(adapter).sync_connection(connection.id)

        assert run.status == "FAILED"
        assert run.error_code == "API_ERROR"
        assert len(adapter.fetch_calls) == 1
        assert broker_store.connections[connection.id].last_error == "bad request"

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, broker_store):
        from app.core.config import settings

        connection = broker_store.add_connection()
        adapter = FakeAdapter(BrokerApiError("timeout"))

        run = await engine_for(adapter).sync_connection(connection.id)

        assert run.status == "FAILED"
        assert len(adapter.fetch_calls) == settings.broker_retry_attempts

    @pytest.mark.asyncio
    async def test_repeated_auth_failures_disable_connection(self, broker_store):
        """Auth failures are never retried and disable the connection at the limit."""
        from app.core.config import settings

        connection = broker_store.add_connection()
        adapter = FakeAdapter(BrokerAuthError("token revoked"))
        engine = engine_for(adapter)

        for attempt in range(1, settings.broker_auth_failure_limit + 1):
            run = await engine.sync_connection(connection.id)
            assert run.error_code == "AUTH_ERROR"
            assert broker_store.connections[connection.id].consecutive_auth_failures == attempt

        assert len(adapter.fetch_calls) == settings.broker_auth_failure_limit
        assert broker_store.connections[connection.id].status == "DISABLED"

        after = await engine.sync_connection(connection.id)
        assert after.error_code == "CONNECTION_DISABLED"

    @pytest.mark.asyncio
    async def test_success_resets_auth_failures(self, broker_store):
        connection = broker_store.add_connection(consecutive_auth_failures=2)

        await engine_for(FakeAdapter([])).sync_connection(connection.id)

        assert broker_store.connections[connection.id].consecutive_auth_failures == 0

    @pytest.mark.asyncio
    async def test_undecryptable_credentials(self, broker_store):
        connection = broker_store.add_connection(encrypted_credentials="not-a-fernet-token")
        adapter = FakeAdapter([])

        run = await engine_for(adapter).sync_connection(connection.id)

        assert run.error_code == "AUTH_ERROR"
        assert adapter.fetch_calls == []
        assert broker_store.connections[connection.id].consecutive_auth_failures == 1


class TestSyncBatches:
    @pytest.mark.asyncio
    async def test_failed_batch_keeps_committed_progress(self, broker_store, monkeypatch):
        from app.core.config import settings

        monkeypatch.setattr(settings, "broker_sync_batch_size", 2)
        broker_store.fail_upsert_after = 1
        connection = broker_store.add_connection()
        trades = [trade(f"t{i}", i * 10) for i in range(1, 6)]

        run = await engine_for(FakeAdapter(trades)).sync_connection(connection.id)

        assert run.status == "PARTIAL"
        assert run.error_code == "BATCH_FAILED"
        assert run.trades_imported == 2
        stored = broker_store.connections[connection.id]
        assert stored.sync_watermark == T0 + timedelta(minutes=20)
        assert stored.status == "ACTIVE"

    @pytest.mark.asyncio
    async def test_first_batch_failure_fails_run(self, broker_store):
        broker_store.fail_upsert_after = 0
        connection = broker_store.add_connection()

        run = await engine_for(FakeAdapter([trade("t1", 10)])).sync_connection(connection.id)

        assert run.status == "FAILED"
        assert run.trades_imported == 0
        assert broker_store.connections[connection.id].sync_watermark is None


class TestTokenRefresh:
    @pytest.mark.asyncio
    async def test_expiring_token_refreshed_before_fetch(self, broker_store):
        credentials = {
            "access_token": "old",
            "refresh_token": "refresh-1",
            "expires_at": (datetime.now(UTC) + timedelta(seconds=30)).isoformat(),
        }
        connection = broker_store.add_connection(broker_type="TRADESTATION", credentials=credentials)
        adapter = FakeOAuthAdapter([])

        run = await engine_for(adapter).sync_connection(connection.id)

        assert run.status == "SUCCESS"
        assert adapter.refresh_calls == 1
        assert adapter.fetch_calls[0][0]["access_token"] == "fresh-token"
        stored = decrypt_credentials(broker_store.connections[connection.id].encrypted_credentials)
        assert stored["access_token"] == "fresh-token"
        assert stored["refresh_token"] == "refresh-1"

    @pytest.mark.asyncio
    async def test_valid_token_not_refreshed(self, broker_store):
        credentials = {
            "access_token": "current",
            "refresh_token": "refresh-1",
            "expires_at": (datetime.now(UTC) + timedelta(hours=1)).isoformat(),
        }
        connection = broker_store.add_connection(
            broker_type="TRADESTATION", encrypted_credentials=encrypt_credentials(credentials)
        )
        adapter = FakeOAuthAdapter([])

        await engine_for(adapter).sync_connection(connection.id)

        assert adapter.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_refresh_rejected(self, broker_store):
        credentials = {"access_token": "old", "refresh_token": "r", "expires_at": T0.isoformat()}
        connection = broker_store.add_connection(broker_type="TRADESTATION", credentials=credentials)
        adapter = FakeOAuthAdapter([], refresh_error=BrokerAuthError("refresh token revoked"))

        run = await engine_for(adapter).sync_connection(connection.id)

        assert run.status == "FAILED"
        assert run.error_code == "AUTH_EXPIRED"
        assert adapter.fetch_calls == []
        assert broker_store.connections[connection.id].consecutive_auth_failures == 1


class TestPairingCursor:
    @pytest.mark.asyncio
    async def test_cursor_is_stored_and_passed_back(self, broker_store):
        connection = broker_store.add_connection()
        adapter = FakeAdapter([trade("t1", 10)])
        adapter.next_cursor = PairingCursor(fills_from=T0, skip_ids=frozenset({"f9"}))
        engine = engine_for(adapter)

        await engine.sync_connection(connection.id)
        await engine.sync_connection(connection.id)

        assert broker_store.connections[connection.id].pairing_cursor == {
            "fills_from": T0.isoformat(),
            "skip_ids": ["f9"],
        }
        assert adapter.cursors == [None, adapter.next_cursor]

    @pytest.mark.asyncio
    async def test_full_sync_ignores_cursor(self, broker_store):
        connection = broker_store.add_connection(pairing_cursor={"fills_from": T0.isoformat(), "skip_ids": []})
        adapter = FakeAdapter([])

        await engine_for(adapter).sync_connection(connection.id, full=True)

        assert adapter.cursors == [None]

    @pytest.mark.asyncio
    async def test_failed_batch_keeps_previous_cursor(self, broker_store, monkeypatch):
        from app.core.config import settings

        monkeypatch.setattr(settings, "broker_sync_batch_size", 1)
        broker_store.fail_upsert_after = 1
        previous = {"fills_from": T0.isoformat(), "skip_ids": []}
        connection = broker_store.add_connection(pairing_cursor=previous)
        adapter = FakeAdapter([trade("t1", 10), trade("t2", 20)])
        adapter.next_cursor = PairingCursor(fills_from=T0 + timedelta(hours=1))

        run = await engine_for(adapter).sync_connection(connection.id)

        assert run.status == "PARTIAL"
        assert broker_store.connections[connection.id].pairing_cursor == previous


class FillHistory:
    """Alpaca FILL activities endpoint over a history that grows between syncs."""

    def __init__(self):
        self.activities: list[dict] = []
        self.afters: list = []

    def add(self, activity_id, side, qty, price, day):
        when = (T0 + timedelta(days=day)).isoformat().replace("+00:00", "Z")
        self.activities.append(
            {
                "id": activity_id,
                "activity_type": "FILL",
                "symbol": "AAPL",
                "side": side,
                "qty": str(qty),
                "price": str(price),
                "transaction_time": when,
            }
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        after = request.url.params.get("after")
        self.afters.append(after)
        page = self.activities
        if after:
            cutoff = datetime.fromisoformat(after)
            page = [a for a in page if datetime.fromisoformat(a["transaction_time"].replace("Z", "+00:00")) > cutoff]
        return httpx.Response(200, json=page)


class TestIncrementalPairing:
    @pytest.mark.asyncio
    async def test_position_opened_weeks_before_sync_pairs_like_full_sync(self, broker_store):
        """Buy, sell 20 days later, buy again: incremental syncs must not invent a short."""
        history = FillHistory()
        adapter = AlpacaAdapter(transport=httpx.MockTransport(history))
        engine = engine_for(adapter)
        connection = broker_store.add_connection()

        history.add("b1", "buy", 10, 100, day=0)
        await engine.sync_connection(connection.id)
        history.add("s1", "sell", 10, 110, day=20)
        await engine.sync_connection(connection.id)
        history.add("b2", "buy", 10, 111, day=21)
        last = await engine.sync_connection(connection.id)

        assert last.status == "SUCCESS"
        assert set(broker_store.trades) == {("ACC1", "b1-s1")}
        stored = broker_store.trades[("ACC1", "b1-s1")]
        assert stored["direction"] == "LONG"
        assert Decimal(str(stored["realized_pnl"])) == Decimal("100")
        assert history.afters[0] is None
        assert history.afters[2] is not None

    @pytest.mark.asyncio
    async def test_connection_without_cursor_reads_full_history(self, broker_store):
        history = FillHistory()
        history.add("b1", "buy", 10, 100, day=0)
        history.add("s1", "sell", 10, 110, day=20)
        connection = broker_store.add_connection(sync_watermark=T0 + timedelta(days=19))

        await engine_for(AlpacaAdapter(transport=httpx.MockTransport(history))).sync_connection(connection.id)

        assert history.afters == [None]
        assert set(broker_store.trades) == {("ACC1", "b1-s1")}
        assert broker_store.connections[connection.id].pairing_cursor["fills_from"] == (T0 + timedelta(days=20)).isoformat()
