"""
Tests for MetaLeadAdsConnector against a mocked Graph API.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from connectors.meta import MetaLeadAdsConnector
from utils.errors import InvalidToken, UpstreamError, UpstreamRateLimited
from utils.schemas import LeadForm

_RETRY = {"max_retries": 2, "backoff_base": 1.0, "backoff_multiplier": 2.0, "timeout": 5}


def _connector(handler):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    connector = MetaLeadAdsConnector(
        transport=httpx.MockTransport(handler),
        retry_config=_RETRY,
        sleep=fake_sleep,
    )
    return connector, sleeps


def _form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestAuthUrl:
    def test_contains_state_scopes_and_redirect(self):
        connector = MetaLeadAdsConnector()

        url = connector.get_auth_url("nonce-abc")
        parsed = urlparse(url)
        query = parse_qs(parsed.query)

        assert parsed.netloc == "www.facebook.com"
        assert parsed.path.endswith("/dialog/oauth")
        assert query["state"] == ["nonce-abc"]
        assert "leads_retrieval" in query["scope"][0].split(",")
        assert query["redirect_uri"][0].endswith("/api/v1/connectors/meta/callback")

    def test_account_id_normalisation(self):
        connector = MetaLeadAdsConnector()

        assert connector.normalize_account_id("12345") == "act_12345"
        assert connector.normalize_account_id("act_12345") == "act_12345"


class TestPaging:
    @pytest.mark.asyncio
    async def test_cursor_and_last_page(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if "after" not in request.url.params:
                return httpx.Response(
                    200,
                    json={
                        "data": [{"id": "act_1", "name": "Main", "account_status": 1}],
                        "paging": {"cursors": {"after": "CUR1"}, "next": "https://graph/next"},
                    },
                )
            return httpx.Response(
                200,
                json={"data": [{"id": "act_2", "account_status": 2}], "paging": {"cursors": {"after": "CUR2"}}},
            )

        connector, _ = _connector(handler)

        first = await connector.fetch_accounts_page("tok", None)
        second = await connector.fetch_accounts_page("tok", first.next_cursor)

        assert first.next_cursor == "CUR1"
        assert second.next_cursor is None
        assert requests[0].url.path.endswith("/me/adaccounts")
        assert requests[0].headers["Authorization"] == "Bearer tok"
        assert requests[1].url.params["after"] == "CUR1"
        assert connector.parse_account(first.items[0]).status == "active"
        assert connector.parse_account(second.items[0]).status == "disabled"

    @pytest.mark.asyncio
    async def test_lead_parsing(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "id": "L1",
                            "created_time": "2024-03-01T10:00:00+0000",
                            "field_data": [{"name": "email", "values": ["a@b.io"]}],
                        }
                    ]
                },
            )

        connector, _ = _connector(handler)
        form = LeadForm(external_id="form_1", account_ref="act_1")

        page = await connector.fetch_leads_page("tok", "form_1", None)
        raw = connector.parse_lead(page.items[0], form)

        assert raw.external_id == "L1"
        assert raw.platform == "meta"
        assert raw.form_ref == "form_1" and raw.account_ref == "act_1"
        assert raw.field_data == [{"name": "email", "values": ["a@b.io"]}]


class TestErrors:
    @pytest.mark.asyncio
    async def test_token_error_is_not_retried(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(400, json={"error": {"code": 190, "message": "Session has expired"}})

        connector, sleeps = _connector(handler)

        with pytest.raises(InvalidToken):
            await connector.fetch_forms_page("tok", "act_1", None)
        assert calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried_with_backoff(self):
        responses = [
            httpx.Response(400, json={"error": {"code": 17, "message": "User request limit reached"}}),
            httpx.Response(429, json={}),
            httpx.Response(200, json={"data": []}),
        ]

        def handler(request):
            return responses.pop(0)

        connector, sleeps = _connector(handler)

        page = await connector.fetch_forms_page("tok", "act_1", None)

        assert page.items == []
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_retries(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"code": 4, "message": "Application request limit reached"}})

        connector, sleeps = _connector(handler)

        with pytest.raises(UpstreamRateLimited):
            await connector.fetch_leads_page("tok", "form_1", None)
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_server_error_then_success(self):
        responses = [httpx.Response(503, text="unavailable"), httpx.Response(200, json={"data": [{"id": "f1"}]})]

        def handler(request):
            return responses.pop(0)

        connector, sleeps = _connector(handler)

        page = await connector.fetch_forms_page("tok", "act_1", None)

        assert page.items == [{"id": "f1"}]
        assert sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self):
        attempts = 0

        def handler(request):
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"data": []})

        connector, sleeps = _connector(handler)

        await connector.fetch_accounts_page("tok", None)

        assert attempts == 2
        assert sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_permission_error_fails_fast(self):
        def handler(request):
            return httpx.Response(403, json={"error": {"code": 200, "message": "Permissions error"}})

        connector, sleeps = _connector(handler)

        with pytest.raises(UpstreamError) as exc_info:
            await connector.fetch_leads_page("tok", "form_1", None)
        assert not isinstance(exc_info.value, InvalidToken)
        assert sleeps == []


class TestTokenExchange:
    @pytest.mark.asyncio
    async def test_code_is_exchanged_and_extended(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path))
            if request.url.path.endswith("/oauth/access_token"):
                body = _form(request)
                if body.get("grant_type") == "fb_exchange_token":
                    assert body["fb_exchange_token"] == "short"
                    return httpx.Response(200, json={"access_token": "long", "expires_in": 5184000})
                assert body["code"] == "the-code"
                return httpx.Response(200, json={"access_token": "short", "expires_in": 3600})
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"permission": "leads_retrieval", "status": "granted"},
                        {"permission": "ads_read", "status": "declined"},
                    ]
                },
            )

        connector, _ = _connector(handler)

        token = await connector.exchange_code("the-code", "https://app/callback")

        assert token["access_token"] == "long"
        assert token["expires_in"] == 5184000
        assert token["scopes"] == ["leads_retrieval"]
        assert seen[-1][0] == "GET" and seen[-1][1].endswith("/me/permissions")

    @pytest.mark.asyncio
    async def test_rejected_code_is_not_retried(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(500, json={"error": {"code": 1, "message": "oops"}})

        connector, sleeps = _connector(handler)

        with pytest.raises(UpstreamError) as exc_info:
            await connector.exchange_code("the-code", "https://app/callback")
        assert calls == 1
        assert sleeps == []
        assert exc_info.value.details["error"]["code"] == 1
