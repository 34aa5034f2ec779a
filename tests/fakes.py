"""
Scripted in-process connector used by the orchestration and service tests.
"""

import asyncio
from typing import Any, Dict, List, Optional

from connectors.base import BaseAdConnector
from utils.errors import InvalidToken, LeadSyncError
from utils.schemas import AdAccount, LeadForm, OAuthConnection, Page, RawLead


def lead_item(lead_id: str, email: str = "", name: str = "", phone: str = "", **extra) -> Dict[str, Any]:
    fields = []
    if name:
        fields.append({"name": "full_name", "values": [name]})
    if email:
        fields.append({"name": "email", "values": [email]})
    if phone:
        fields.append({"name": "phone_number", "values": [phone]})
    for key, value in extra.items():
        fields.append({"name": key, "values": [value]})
    return {"id": lead_id, "created_time": "2024-03-01T10:00:00+0000", "field_data": fields}


class FakeConnector(BaseAdConnector):
    """
    Serves ``accounts`` / ``forms`` / ``leads`` from dicts, ``page_size``
    items per page.  ``failures`` maps ``"accounts"``, ``"forms:<acct>"`` or
    ``"leads:<form>"`` to an exception raised on every call; ``delays``
    uses the same keys to make a call slow.  Only tokens in
    ``valid_tokens`` are accepted.
    """

    def __init__(
        self,
        *,
        accounts: Optional[List[Dict[str, Any]]] = None,
        forms: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        leads: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        page_size: int = 2,
        valid_tokens=("tok-1",),
        exchange_result: Any = None,
        refresh_result: Any = None,
        failures: Optional[Dict[str, LeadSyncError]] = None,
        delays: Optional[Dict[str, float]] = None,
    ):
        super().__init__()
        self.accounts = accounts or []
        self.forms = forms or {}
        self.leads = leads or {}
        self.page_size = page_size
        self.valid_tokens = set(valid_tokens)
        self.exchange_result = exchange_result or {"access_token": "tok-1", "expires_in": 3600, "scopes": ["leads_retrieval"]}
        self.refresh_result = refresh_result
        self.failures = failures or {}
        self.delays = delays or {}
        self.calls: List[str] = []
        self.exchanged_codes: List[str] = []
        self.refresh_calls = 0
        self.revoked: List[str] = []

    @property
    def provider_name(self) -> str:
        return "fake"

    @property
    def display_name(self) -> str:
        return "Fake Ads"

    @property
    def scopes(self) -> List[str]:
        return ["leads_retrieval"]

    def get_auth_url(self, state: str) -> str:
        return f"https://fake.example/oauth?state={state}&scope=leads_retrieval"

    async def exchange_code(self, code: str, redirect_uri: str) -> Dict[str, Any]:
        self.exchanged_codes.append(code)
        if isinstance(self.exchange_result, Exception):
            raise self.exchange_result
        return dict(self.exchange_result)

    async def refresh_access_token(self, connection: OAuthConnection) -> Dict[str, Any]:
        self.refresh_calls += 1
        if self.refresh_result is None:
            raise InvalidToken("refresh rejected", details={"error": {"code": 190}})
        if isinstance(self.refresh_result, Exception):
            raise self.refresh_result
        return {"access_token": self.refresh_result, "expires_in": 3600}

    async def revoke_token(self, access_token: str) -> bool:
        self.revoked.append(access_token)
        return True

    async def _serve(self, key: str, token: str, items: List[Dict[str, Any]], cursor: Optional[str]) -> Page:
        self.calls.append(key)
        if key in self.delays:
            await asyncio.sleep(self.delays[key])
        if token not in self.valid_tokens:
            raise InvalidToken("token rejected")
        if key in self.failures:
            raise self.failures[key]
        start = int(cursor or 0)
        end = start + self.page_size
        return Page(items=items[start:end], next_cursor=str(end) if end < len(items) else None)

    async def fetch_accounts_page(self, access_token: str, cursor: Optional[str]) -> Page:
        return await self._serve("accounts", access_token, self.accounts, cursor)

    async def fetch_forms_page(self, access_token: str, account_id: str, cursor: Optional[str]) -> Page:
        return await self._serve(f"forms:{account_id}", access_token, self.forms.get(account_id, []), cursor)

    async def fetch_leads_page(self, access_token: str, form_id: str, cursor: Optional[str]) -> Page:
        return await self._serve(f"leads:{form_id}", access_token, self.leads.get(form_id, []), cursor)

    def parse_account(self, item: Dict[str, Any]) -> AdAccount:
        return AdAccount(external_id=item["id"], display_name=item.get("name", ""), platform="fake")

    def parse_form(self, item: Dict[str, Any], account_id: str) -> LeadForm:
        return LeadForm(external_id=item["id"], account_ref=account_id, name=item.get("name", ""))

    def parse_lead(self, item: Dict[str, Any], form: LeadForm) -> RawLead:
        return RawLead(
            external_id=item.get("id", ""),
            platform="fake",
            form_ref=form.external_id,
            account_ref=form.account_ref,
            created_time=item.get("created_time"),
            field_data=item.get("field_data"),
        )

    def normalize_account_id(self, account_id: str) -> str:
        return account_id if account_id.startswith("act_") else f"act_{account_id}"


def make_connection(owner_id: str = "owner-1", token: str = "tok-1", platform: str = "fake", **kw) -> OAuthConnection:
    return OAuthConnection(owner_id=owner_id, platform=platform, access_token=token, **kw)
