"""
报价缓存与日线更新通知测试

覆盖范围：
  - 交易时段判断与 TTL
  - 报价缓存：进程内降级、Redis 读写、未命中批量拉取、清理
  - 更新通知：通道命名、插入事件分发、变更流监听、重新订阅、断线重连
  - 内存缓存跟踪通道与服务启动接线
"""

import asyncio
import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch
from zoneinfo import ZoneInfo

from pymongo.errors import PyMongoError

from conftest import END, START, FakeAcquisition, FakeRepository, sample_records

NY = ZoneInfo("America/New_York")
REDIS_PATH = "market_data_service.services.quote_cache.get_redis"
MONGO_PATH = "market_data_service.services.update_notifier.get_mongo_db"
STREAMS_PATH = "market_data_service.services.update_notifier.supports_change_streams"
SLEEP_PATH = "market_data_service.services.update_notifier.asyncio.sleep"


def _quote(ticker: str, price: float) -> dict:
    return {"ticker": ticker, "price": price, "previous_close": price - 1}


# ─────────────────────────────────────────────────────────
# 1. 交易时段
# ─────────────────────────────────────────────────────────

class TestMarketHours:
    def test_open_on_weekday_session(self):
        from market_data_service.services.quote_cache import is_market_open
        assert is_market_open(datetime(2024, 1, 3, 10, 0, tzinfo=NY)) is True

    def test_closed_outside_session(self):
        from market_data_service.services.quote_cache import is_market_open
        assert is_market_open(datetime(2024, 1, 3, 8, 0, tzinfo=NY)) is False
        assert is_market_open(datetime(2024, 1, 3, 16, 0, tzinfo=NY)) is False

    def test_closed_on_weekend(self):
        from market_data_service.services.quote_cache import is_market_open
        assert is_market_open(datetime(2024, 1, 6, 11, 0, tzinfo=NY)) is False

    def test_ttl_by_session(self):
        from market_data_service.services.quote_cache import quote_ttl
        assert quote_ttl(datetime(2024, 1, 3, 10, 0, tzinfo=NY)) == 120
        assert quote_ttl(datetime(2024, 1, 6, 10, 0, tzinfo=NY)) == 900


# ─────────────────────────────────────────────────────────
# 2. 报价缓存
# ─────────────────────────────────────────────────────────

class TestQuoteCacheLocal:
    def setup_method(self):
        from market_data_service.services.quote_cache import QuoteCache
        self.now = [0.0]
        self.acq = FakeAcquisition(quotes={
            "AAPL": _quote("AAPL", 190.0),
            "MSFT": _quote("MSFT", 410.0),
            "NVDA": _quote("NVDA", 480.0),
        })
        self.cache = QuoteCache(acquisition=self.acq, clock=lambda: self.now[0])
        self._redis = patch(REDIS_PATH, return_value=None)
        self._redis.start()

    def teardown_method(self):
        self._redis.stop()

    def test_second_read_is_cached(self):
        async def scenario():
            await self.cache.get_quotes(["AAPL"])
            return await self.cache.get_quote("aapl")

        quote = asyncio.run(scenario())
        assert quote.price == 190.0
        assert self.acq.quote_calls == [["AAPL"]]

    def test_only_misses_fetched(self):
        async def scenario():
            await self.cache.get_quotes(["AAPL"])
            return await self.cache.get_quotes(["AAPL", "MSFT"])

        quotes = asyncio.run(scenario())
        assert list(quotes) == ["AAPL", "MSFT"]
        assert self.acq.quote_calls[-1] == ["MSFT"]

    def test_expired_quote_refetched(self):
        async def scenario():
            await self.cache.get_quotes(["AAPL"])
            self.now[0] += 1000
            await self.cache.get_quotes(["AAPL"])

        asyncio.run(scenario())
        assert len(self.acq.quote_calls) == 2

    def test_unknown_ticker_omitted(self):
        quotes = asyncio.run(self.cache.get_quotes(["AAPL", "ZZZZ"]))
        assert list(quotes) == ["AAPL"]

    def test_batches_by_size(self):
        from market_data_service.config import settings
        with patch.object(settings, "QUOTE_BATCH_SIZE", 2):
            asyncio.run(self.cache.get_quotes(["AAPL", "MSFT", "NVDA"]))
        assert self.acq.quote_calls == [["AAPL", "MSFT"], ["NVDA"]]

    def test_clear_forces_refetch(self):
        async def scenario():
            await self.cache.get_quotes(["AAPL", "MSFT"])
            await self.cache.clear("aapl")
            await self.cache.get_quotes(["AAPL", "MSFT"])

        asyncio.run(scenario())
        assert self.acq.quote_calls[-1] == ["AAPL"]

    def test_stats_memory_backend(self):
        asyncio.run(self.cache.get_quotes(["AAPL"]))
        stats = self.cache.stats()
        assert stats["backend"] == "memory"
        assert stats["local_entries"] == 1


class TestQuoteCacheRedis:
    def setup_method(self):
        from market_data_service.services.quote_cache import QuoteCache
        self.acq = FakeAcquisition(quotes={"AAPL": _quote("AAPL", 190.0)})
        self.cache = QuoteCache(acquisition=self.acq)
        self.redis = MagicMock()
        self.redis.setex = AsyncMock()
        self.redis.delete = AsyncMock()

    def test_miss_writes_with_ttl(self):
        self.redis.get = AsyncMock(return_value=None)
        with patch(REDIS_PATH, return_value=self.redis):
            quotes = asyncio.run(self.cache.get_quotes(["AAPL"]))
        assert quotes["AAPL"].price == 190.0
        key, ttl, payload = self.redis.setex.await_args.args
        assert key == "quote:AAPL"
        assert ttl in (120, 900)
        assert json.loads(payload)["price"] == 190.0

    def test_hit_skips_provider(self):
        self.redis.get = AsyncMock(return_value=json.dumps({"ticker": "AAPL", "price": 188.0}))
        with patch(REDIS_PATH, return_value=self.redis):
            quotes = asyncio.run(self.cache.get_quotes(["AAPL"]))
        assert quotes["AAPL"].price == 188.0
        assert self.acq.quote_calls == []

    def test_redis_error_falls_back_to_local(self):
        self.redis.get = AsyncMock(side_effect=ConnectionError("down"))
        self.redis.setex = AsyncMock(side_effect=ConnectionError("down"))
        with patch(REDIS_PATH, return_value=self.redis):
            asyncio.run(self.cache.get_quotes(["AAPL"]))
        assert self.cache.stats()["local_entries"] == 1

    def test_clear_single_ticker(self):
        with patch(REDIS_PATH, return_value=self.redis):
            asyncio.run(self.cache.clear("aapl"))
        self.redis.delete.assert_awaited_once_with("quote:AAPL")


# ─────────────────────────────────────────────────────────
# 3. 日线更新通知
# ─────────────────────────────────────────────────────────

class FakeChangeStream:
    """模拟 motor 变更流：异步上下文管理器 + 异步迭代器"""

    def __init__(self, changes):
        self._changes = list(changes)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._changes:
            raise StopAsyncIteration
        return self._changes.pop(0)


class TestChannelName:
    def test_order_and_case_independent(self):
        from market_data_service.services.update_notifier import channel_name
        assert channel_name(["msft", "AAPL"]) == channel_name(["AAPL", "MSFT", "aapl"])

    def test_full_set_distinguishes_channels(self):
        from market_data_service.services.update_notifier import channel_name
        first = [f"T{i:03d}" for i in range(20)]
        second = first + ["ZZZ"]
        assert channel_name(first) != channel_name(second)
        assert channel_name(first).startswith("market-data-")


class TestUpdateNotifier:
    def setup_method(self):
        from market_data_service.services.update_notifier import UpdateNotifier
        self.store = MagicMock()
        self.notifier = UpdateNotifier(price_store=self.store)
        self.received = []

    def test_dispatch_invalidates_and_notifies(self):
        async def scenario():
            with patch(MONGO_PATH, return_value=None):
                await self.notifier.subscribe("c1", ["aapl", "MSFT"], self.received.append)
                hits = await self.notifier.dispatch("aapl")
                misses = await self.notifier.dispatch("TSLA")
                await self.notifier.close_all()
            return hits, misses

        hits, misses = asyncio.run(scenario())
        assert (hits, misses) == (1, 0)
        assert self.received == ["AAPL"]
        self.store.invalidate_cache.assert_called_once_with("AAPL")

    def test_async_callback_awaited(self):
        callback = AsyncMock()

        async def scenario():
            with patch(MONGO_PATH, return_value=None):
                sub = await self.notifier.subscribe("c1", ["AAPL"], callback)
                await sub.handle_insert("AAPL")
                await self.notifier.close_all()

        asyncio.run(scenario())
        callback.assert_awaited_once_with("AAPL")

    def test_callback_error_does_not_propagate(self):
        def boom(ticker):
            raise RuntimeError("consumer failed")

        async def scenario():
            with patch(MONGO_PATH, return_value=None):
                sub = await self.notifier.subscribe("c1", ["AAPL"], boom)
                handled = await sub.handle_insert("AAPL")
                await self.notifier.close_all()
            return handled

        assert asyncio.run(scenario()) is True
        self.store.invalidate_cache.assert_called_once_with("AAPL")

    def test_resubscribe_replaces_channel(self):
        async def scenario():
            with patch(MONGO_PATH, return_value=None):
                await self.notifier.subscribe("c1", ["AAPL"], self.received.append)
                await self.notifier.subscribe("c1", ["MSFT", "NVDA"], self.received.append)
                channels = self.notifier.channels()
                await self.notifier.close_all()
            return channels

        channels = asyncio.run(scenario())
        assert list(channels.values()) == [["MSFT", "NVDA"]]
        assert self.notifier.channels() == {}

    def test_change_stream_inserts_trigger_callback(self):
        from market_data_service.db import BARS_COLLECTION
        collection = MagicMock()
        collection.watch.return_value = FakeChangeStream([
            {"operationType": "insert", "fullDocument": {"ticker": "AAPL", "bar_date": "2024-01-02"}},
            {"operationType": "insert", "fullDocument": {"ticker": "MSFT", "bar_date": "2024-01-02"}},
        ])
        db = {BARS_COLLECTION: collection}

        async def scenario():
            with patch(MONGO_PATH, return_value=db), patch(STREAMS_PATH, return_value=True):
                sub = await self.notifier.subscribe("c1", ["AAPL", "MSFT"], self.received.append)
                await sub._task
                await self.notifier.close_all()

        asyncio.run(scenario())
        assert self.received == ["AAPL", "MSFT"]
        pipeline = collection.watch.call_args.args[0]
        assert pipeline[0]["$match"]["fullDocument.ticker"] == {"$in": ["AAPL", "MSFT"]}
        assert pipeline[0]["$match"]["operationType"] == "insert"

    def test_standalone_server_skips_watch(self):
        from market_data_service.db import BARS_COLLECTION
        collection = MagicMock()
        db = {BARS_COLLECTION: collection}

        async def scenario():
            with patch(MONGO_PATH, return_value=db), patch(STREAMS_PATH, return_value=False):
                sub = await self.notifier.subscribe("c1", ["AAPL"], self.received.append)
                await sub._task
                active = sub.active
                await self.notifier.close_all()
            return active

        assert asyncio.run(scenario()) is False
        collection.watch.assert_not_called()

    def test_notification_refetches_only_that_ticker(self):
        from market_data_service.layers.cache import MemoryCache
        from market_data_service.services.price_store import TieredPriceStore
        from market_data_service.services.update_notifier import UpdateNotifier

        repo = FakeRepository(rows={
            "AAA": sample_records(30, store=True),
            "BBB": sample_records(30, store=True),
        })
        store = TieredPriceStore(cache=MemoryCache(ttl=300), repository=repo,
                                 acquisition=FakeAcquisition(), fetch_delay=0)
        notifier = UpdateNotifier(price_store=store)

        async def scenario():
            await store.get_tickers_data(["AAA", "BBB"], START, END)
            with patch(MONGO_PATH, return_value=None):
                await notifier.subscribe("c1", ["AAA", "BBB"], self.received.append)
                await notifier.dispatch("AAA")
                await notifier.close_all()
            return await store.get_tickers_data(["AAA", "BBB"], START, END)

        data = asyncio.run(scenario())
        assert self.received == ["AAA"]
        assert data["AAA"].source == "store"
        assert data["BBB"].source == "cache"

    def test_stream_error_reconnects_with_backoff(self):
        from market_data_service.db import BARS_COLLECTION
        collection = MagicMock()
        collection.watch.side_effect = [
            PyMongoError("primary stepped down"),
            PyMongoError("primary stepped down"),
            FakeChangeStream([{"operationType": "insert", "fullDocument": {"ticker": "AAPL"}}]),
        ]
        db = {BARS_COLLECTION: collection}

        async def scenario():
            with patch(MONGO_PATH, return_value=db), patch(STREAMS_PATH, return_value=True), \
                 patch(SLEEP_PATH, new_callable=AsyncMock) as sleep:
                sub = await self.notifier.subscribe("c1", ["AAPL"], self.received.append)
                await sub._task
                await self.notifier.close_all()
            return sub.reconnects, [c.args[0] for c in sleep.await_args_list]

        reconnects, delays = asyncio.run(scenario())
        assert reconnects == 2
        assert delays == [1.0, 2.0]
        assert self.received == ["AAPL"]

    def test_channel_status_reports_inactive_channel(self):
        async def scenario():
            with patch(MONGO_PATH, return_value=None):
                sub = await self.notifier.subscribe("c1", ["aapl"], self.received.append)
                await sub._task
                status = self.notifier.channel_status()
                await self.notifier.close_all()
            return status

        status = asyncio.run(scenario())
        assert len(status) == 1
        assert status[0]["consumer_id"] == "c1"
        assert status[0]["tickers"] == ["AAPL"]
        assert status[0]["active"] is False
        assert status[0]["reconnects"] == 0


# ─────────────────────────────────────────────────────────
# 4. 内存缓存跟踪
# ─────────────────────────────────────────────────────────

class TestMemoryCacheTracking:
    def setup_method(self):
        from market_data_service.layers.cache import MemoryCache
        from market_data_service.services.price_store import TieredPriceStore
        from market_data_service.services.update_notifier import UpdateNotifier
        self.repo = FakeRepository(rows={
            t: sample_records(30, store=True) for t in ("AAA", "BBB", "CCC")
        })
        self.store = TieredPriceStore(cache=MemoryCache(ttl=300), repository=self.repo,
                                      acquisition=FakeAcquisition(), fetch_delay=0)
        self.notifier = UpdateNotifier(price_store=self.store)

    def test_insert_on_change_stream_purges_cached_ticker(self):
        from market_data_service.db import BARS_COLLECTION
        from market_data_service.services.update_notifier import CACHE_CONSUMER
        collection = MagicMock()
        collection.watch.return_value = FakeChangeStream([
            {"operationType": "insert", "fullDocument": {"ticker": "AAA", "bar_date": "2024-02-01"}},
        ])
        db = {BARS_COLLECTION: collection}

        async def scenario():
            with patch(MONGO_PATH, return_value=db), patch(STREAMS_PATH, return_value=True):
                await self.notifier.track_memory_cache()
                empty = self.notifier.channels()
                await self.store.get_tickers_data(["AAA", "BBB"], START, END)
                sub = await self.notifier.sync_cache_channel()
                await sub._task
                data = await self.store.get_tickers_data(["AAA", "BBB"], START, END)
                await self.notifier.close_all()
            return empty, sub, data

        empty, sub, data = asyncio.run(scenario())
        assert empty == {}
        assert sub.consumer_id == CACHE_CONSUMER
        assert sub.tickers == ["AAA", "BBB"]
        pipeline = collection.watch.call_args.args[0]
        assert pipeline[0]["$match"]["fullDocument.ticker"] == {"$in": ["AAA", "BBB"]}
        assert data["AAA"].source == "store"
        assert data["BBB"].source == "cache"
        assert self.repo.fetch_calls[-1] == ["AAA"]

    def test_new_cached_ticker_rebuilds_channel(self):
        async def scenario():
            with patch(MONGO_PATH, return_value=None):
                await self.notifier.track_memory_cache()
                await self.store.get_tickers_data(["AAA"], START, END)
                await self.notifier._sync_task
                first = list(self.notifier.channels().values())
                await self.store.get_tickers_data(["BBB"], START, END)
                await self.notifier._sync_task
                second = list(self.notifier.channels().values())
                await self.notifier.close_all()
                await self.store.get_tickers_data(["CCC"], START, END)
            return first, second

        first, second = asyncio.run(scenario())
        assert first == [["AAA"]]
        assert second == [["AAA", "BBB"]]
        assert self.notifier.channels() == {}
        assert self.notifier._sync_task is None


# ─────────────────────────────────────────────────────────
# 5. 服务启动接线
# ─────────────────────────────────────────────────────────

class TestLifespanWiring:
    def _start_and_stop(self, change_streams: bool) -> MagicMock:
        from market_data_service.main import app, lifespan
        notifier = MagicMock()
        notifier.track_memory_cache = AsyncMock()
        notifier.close_all = AsyncMock()
        store = MagicMock()
        store.drain_background_tasks = AsyncMock()
        repo = MagicMock()
        repo.ensure_indexes = AsyncMock()

        async def scenario():
            async with lifespan(app):
                pass

        with patch("market_data_service.main.init_mongodb", new_callable=AsyncMock, return_value=True), \
             patch("market_data_service.main.init_redis", new_callable=AsyncMock, return_value=False), \
             patch("market_data_service.main.close_connections", new_callable=AsyncMock), \
             patch("market_data_service.main.supports_change_streams", return_value=change_streams), \
             patch("market_data_service.main.get_bar_repository", return_value=repo), \
             patch("market_data_service.main.get_price_store", return_value=store), \
             patch("market_data_service.main.get_update_notifier", return_value=notifier):
            asyncio.run(scenario())
        repo.ensure_indexes.assert_awaited_once()
        store.drain_background_tasks.assert_awaited_once()
        notifier.close_all.assert_awaited_once()
        return notifier

    def test_replica_set_tracks_memory_cache(self):
        notifier = self._start_and_stop(change_streams=True)
        notifier.track_memory_cache.assert_awaited_once()

    def test_standalone_server_skips_tracking(self):
        notifier = self._start_and_stop(change_streams=False)
        notifier.track_memory_cache.assert_not_awaited()
