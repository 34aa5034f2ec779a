"""
Tests for TokenExchanger and TokenSource.
"""

import asyncio

import pytest

from connectors.token_manager import TokenExchanger, TokenSource
from database.store import InMemoryStore
from tests.fakes import FakeConnector, make_connection
from utils.errors import ConnectionInvalid, InvalidToken, TokenExchangeFailure, UpstreamError
from utils.schemas import ConnectionStatus


class TestExchange:
    @pytest.mark.asyncio
    async def test_exchange_persists_connection(self):
        store = InMemoryStore()
        exchanger = TokenExchanger(FakeConnector(), store)

        connection = await exchanger.exchange("owner-1", "code", "https://app/callback")

        assert connection.version == 1
        assert connection.token_expiry is not None
        assert (await store.get_connection("owner-1", "fake")).access_token == "tok-1"

    @pytest.mark.asyncio
    async def test_reconnect_bumps_version(self):
        store = InMemoryStore()
        exchanger = TokenExchanger(FakeConnector(), store)

        await exchanger.exchange("owner-1", "code-a", "https://app/callback")
        second = await exchanger.exchange("owner-1", "code-b", "https://app/callback")

        assert second.version == 2

    @pytest.mark.asyncio
    async def test_exchange_failure_wraps_vendor_error(self):
        store = InMemoryStore()
        connector = FakeConnector(exchange_result=UpstreamError("nope", details={"error": {"code": 1}}))

        with pytest.raises(TokenExchangeFailure) as exc_info:
            await TokenExchanger(connector, store).exchange("owner-1", "code", "https://app/callback")

        assert exc_info.value.details == {"error": {"code": 1}}
        assert await store.get_connection("owner-1", "fake") is None


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_failure_marks_connection_invalid(self):
        store = InMemoryStore()
        connection = make_connection()
        await store.save_connection(connection)

        with pytest.raises(ConnectionInvalid):
            await TokenExchanger(FakeConnector(), store).refresh(connection)

        stored = await store.get_connection("owner-1", "fake")
        assert stored.status == ConnectionStatus.INVALID
        assert stored.version == 2
        assert stored.error_message.startswith("Refresh failed")

    @pytest.mark.asyncio
    async def test_stale_refresh_picks_up_newer_version(self):
        store = InMemoryStore()
        connector = FakeConnector(refresh_result="tok-2")
        await store.save_connection(make_connection(token="tok-newer", version=3))

        result = await TokenExchanger(connector, store).refresh(make_connection(version=1))

        assert result.access_token == "tok-newer"
        assert connector.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_removed_connection_is_not_refreshed(self):
        store = InMemoryStore()
        connector = FakeConnector(refresh_result="tok-2")

        with pytest.raises(ConnectionInvalid):
            await TokenExchanger(connector, store).refresh(make_connection(token="tok-old"))

        assert connector.refresh_calls == 0
        assert await store.get_connection("owner-1", "fake") is None


class TestTokenSource:
    @pytest.mark.asyncio
    async def test_retries_once_after_refresh(self):
        store = InMemoryStore()
        await store.save_connection(make_connection(token="tok-old"))
        connector = FakeConnector(refresh_result="tok-2")
        tokens = TokenSource(make_connection(token="tok-old"), TokenExchanger(connector, store))
        seen = []

        async def call(token):
            seen.append(token)
            if token != "tok-2":
                raise InvalidToken("expired")
            return "ok"

        assert await tokens.call(call) == "ok"
        assert seen == ["tok-old", "tok-2"]
        assert tokens.connection.version == 2

    @pytest.mark.asyncio
    async def test_second_rejection_is_not_retried_again(self):
        store = InMemoryStore()
        await store.save_connection(make_connection(token="tok-old"))
        connector = FakeConnector(refresh_result="tok-2")
        tokens = TokenSource(make_connection(token="tok-old"), TokenExchanger(connector, store))
        seen = []

        async def call(token):
            seen.append(token)
            raise InvalidToken("still rejected")

        with pytest.raises(InvalidToken):
            await tokens.call(call)
        assert seen == ["tok-old", "tok-2"]

    @pytest.mark.asyncio
    async def test_concurrent_rejections_refresh_once(self):
        store = InMemoryStore()
        await store.save_connection(make_connection(token="tok-old"))
        connector = FakeConnector(refresh_result="tok-2")
        tokens = TokenSource(make_connection(token="tok-old"), TokenExchanger(connector, store))

        async def call(token):
            await asyncio.sleep(0)
            if token != "tok-2":
                raise InvalidToken("expired")
            return token

        results = await asyncio.gather(*(tokens.call(call) for _ in range(5)))

        assert results == ["tok-2"] * 5
        assert connector.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_after_invalidation_calls_fail_fast(self):
        store = InMemoryStore()
        await store.save_connection(make_connection(token="tok-old"))
        tokens = TokenSource(make_connection(token="tok-old"), TokenExchanger(FakeConnector(), store))
        calls = 0

        async def call(token):
            nonlocal calls
            calls += 1
            raise InvalidToken("expired")

        with pytest.raises(ConnectionInvalid):
            await tokens.call(call)
        with pytest.raises(ConnectionInvalid):
            await tokens.call(call)
        assert calls == 1
