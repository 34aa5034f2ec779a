"""
SyncOrchestrator — drives accounts → forms → leads for one connection.

Each account runs as its own task (bounded by a semaphore); inside it each
form is an isolated branch that returns a ``BranchResult``.  Results are
reduced into the ``SyncRun`` at the end, so concurrent branches never share
mutable state and one branch's failure never aborts its siblings.

Run states:  idle → running → completed | completed_with_errors | aborted
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from config.settings import config
from connectors.base import BaseAdConnector
from connectors.token_manager import TokenExchanger, TokenSource
from core.discovery import AccountDiscovery, FormDiscovery
from core.lead_fetcher import LeadFetcher
from core.normalizer import LeadNormalizer
from database.store import LeadStore
from utils.errors import NO_AD_ACCOUNTS_FOUND, ConnectionInvalid, LeadSyncError, MalformedLead
from utils.schemas import (
    AdAccount,
    BranchError,
    BranchResult,
    LeadForm,
    OAuthConnection,
    SyncRun,
    SyncState,
    utcnow,
)

logger = logging.getLogger(__name__)

SYNC_TIMEOUT = "sync_timeout"
CANCELLED = "cancelled"
INTERNAL_ERROR = "internal_error"


def summarize(run: SyncRun, results: Iterable[BranchResult], accounts_processed: int) -> SyncRun:
    """Reduce per-branch results into ``run`` (counts and itemised errors)."""
    for res in results:
        if res.form_ref is not None:
            run.forms_processed += 1
        run.leads_ingested += res.leads_ingested
        run.leads_created += res.leads_created
        run.leads_skipped += res.leads_skipped
        run.per_branch_errors.extend(res.errors)
    run.accounts_processed = accounts_processed
    return run


def _error(account_ref: str, exc: LeadSyncError, form_ref: Optional[str] = None, lead_ref: Optional[str] = None) -> BranchError:
    return BranchError(
        account_ref=account_ref,
        form_ref=form_ref,
        lead_ref=lead_ref,
        code=exc.code,
        message=exc.message,
    )


class SyncOrchestrator:
    def __init__(
        self,
        connector: BaseAdConnector,
        store: LeadStore,
        exchanger: TokenExchanger,
        *,
        normalizer: Optional[LeadNormalizer] = None,
        max_pages: Optional[int] = None,
        max_concurrent_accounts: Optional[int] = None,
        time_budget_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._exchanger = exchanger
        self.accounts = AccountDiscovery(connector, max_pages=max_pages)
        self.forms = FormDiscovery(connector, max_pages=max_pages)
        self.fetcher = LeadFetcher(connector, max_pages=max_pages)
        self.normalizer = normalizer or LeadNormalizer()
        self._max_concurrent = max_concurrent_accounts or config.sync_max_concurrent_accounts
        self._time_budget = time_budget_seconds or config.sync_time_budget_seconds
        self._clock = clock

    # ── public entry point ──────────────────────────────────────────────

    async def run(
        self,
        connection: OAuthConnection,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncRun:
        """
        Execute one sync run and return its finalized ``SyncRun``.

        Setting ``cancel_event`` stops the run (state ``aborted``, reason
        ``cancelled``).  Cancelling the task running this coroutine cancels
        every in-flight branch and re-raises.  Leads already upserted stay.
        """
        run = SyncRun(owner_id=connection.owner_id, platform=connection.platform)
        run.state = SyncState.RUNNING
        run.started_at = self._clock()
        deadline = asyncio.get_running_loop().time() + self._time_budget
        logger.info("[Sync %s] started for owner %s (%s)", run.run_id, run.owner_id, run.platform)

        if not connection.is_active:
            return await self._finish(run, [], 0, abort_reason=ConnectionInvalid.code)

        tokens = TokenSource(connection, self._exchanger)

        discover = asyncio.create_task(self.accounts.list_accounts(tokens))
        reason = await self._wait_all([discover], deadline, cancel_event)
        if reason:
            return await self._finish(run, [], 0, abort_reason=reason)
        exc = discover.exception()
        if isinstance(exc, LeadSyncError):
            logger.warning("[Sync %s] account discovery failed: %s", run.run_id, exc.code)
            return await self._finish(run, [], 0, abort_reason=exc.code)
        if exc is not None:
            raise exc
        accounts = discover.result()

        if not accounts:
            run.advisories.append(NO_AD_ACCOUNTS_FOUND)
            return await self._finish(run, [], 0)

        results, processed, reason = await self._run_accounts(
            connection.owner_id, accounts, tokens, deadline, cancel_event
        )
        return await self._finish(run, results, processed, abort_reason=reason)

    # ── fan-out ─────────────────────────────────────────────────────────

    async def _run_accounts(
        self,
        owner_id: str,
        accounts: List[AdAccount],
        tokens: TokenSource,
        deadline: float,
        cancel_event: Optional[asyncio.Event],
    ) -> Tuple[List[BranchResult], int, Optional[str]]:
        semaphore = asyncio.Semaphore(self._max_concurrent)
        tasks: Dict[asyncio.Task, AdAccount] = {
            asyncio.create_task(self._run_account(owner_id, account, tokens, semaphore)): account
            for account in accounts
        }
        reason = await self._wait_all(list(tasks), deadline, cancel_event)

        results: List[BranchResult] = []
        processed = 0
        for task, account in tasks.items():
            if task.cancelled():
                results.append(
                    BranchResult(
                        account_ref=account.external_id,
                        errors=[
                            BranchError(
                                account_ref=account.external_id,
                                code=reason or CANCELLED,
                                message="Branch did not finish before the run stopped",
                            )
                        ],
                    )
                )
                continue
            exc = task.exception()
            if exc is not None:
                logger.error("Account branch %s raised: %r", account.external_id, exc)
                results.append(
                    BranchResult(
                        account_ref=account.external_id,
                        errors=[
                            BranchError(
                                account_ref=account.external_id,
                                code=INTERNAL_ERROR,
                                message=str(exc),
                            )
                        ],
                    )
                )
                continue
            processed += 1
            results.extend(task.result())
        return results, processed, reason

    async def _wait_all(
        self,
        tasks: List[asyncio.Task],
        deadline: float,
        cancel_event: Optional[asyncio.Event],
    ) -> Optional[str]:
        """
        Wait until every task is done.  Returns ``None`` on normal
        completion, ``"cancelled"`` if ``cancel_event`` fired, or
        ``"sync_timeout"`` when the wall-clock budget ran out.  Any task
        still pending on exit (including when we are cancelled) is cancelled.
        """
        loop = asyncio.get_running_loop()
        waiter = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        pending = set(tasks)
        reason: Optional[str] = None
        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    reason = SYNC_TIMEOUT
                    break
                watch = pending | {waiter} if waiter is not None else pending
                done, _ = await asyncio.wait(
                    watch, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if waiter is not None and waiter in done:
                    reason = CANCELLED
                    break
                pending -= done
        finally:
            if waiter is not None:
                waiter.cancel()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return reason

    # ── branches ────────────────────────────────────────────────────────

    async def _run_account(
        self,
        owner_id: str,
        account: AdAccount,
        tokens: TokenSource,
        semaphore: asyncio.Semaphore,
    ) -> List[BranchResult]:
        async with semaphore:
            try:
                forms = await self.forms.list_forms(tokens, account.external_id)
            except LeadSyncError as exc:
                logger.warning("Form discovery failed for account %s: %s", account.external_id, exc.code)
                return [BranchResult(account_ref=account.external_id, errors=[_error(account.external_id, exc)])]

            return [await self._run_form(owner_id, form, tokens) for form in forms]

    async def _run_form(self, owner_id: str, form: LeadForm, tokens: TokenSource) -> BranchResult:
        result = BranchResult(account_ref=form.account_ref, form_ref=form.external_id)
        try:
            async for raw in self.fetcher.fetch_leads(tokens, form):
                try:
                    lead = self.normalizer.normalize(raw)
                except MalformedLead as exc:
                    result.leads_skipped += 1
                    result.errors.append(
                        _error(form.account_ref, exc, form_ref=form.external_id, lead_ref=raw.external_id or None)
                    )
                    continue
                created = await self._store.upsert_lead(owner_id, lead)
                result.leads_ingested += 1
                result.leads_created += int(created)
        except LeadSyncError as exc:
            logger.warning(
                "Branch %s/%s failed after %d lead(s): %s",
                form.account_ref,
                form.external_id,
                result.leads_ingested,
                exc.code,
            )
            result.errors.append(_error(form.account_ref, exc, form_ref=form.external_id))
        except Exception as exc:
            # Store or parser bugs stay inside this branch; siblings keep their results.
            logger.error(
                "Branch %s/%s raised after %d lead(s): %r",
                form.account_ref,
                form.external_id,
                result.leads_ingested,
                exc,
            )
            result.errors.append(
                BranchError(
                    account_ref=form.account_ref,
                    form_ref=form.external_id,
                    code=INTERNAL_ERROR,
                    message=str(exc),
                )
            )
        return result

    # ── finalisation ────────────────────────────────────────────────────

    async def _finish(
        self,
        run: SyncRun,
        results: List[BranchResult],
        accounts_processed: int,
        *,
        abort_reason: Optional[str] = None,
    ) -> SyncRun:
        summarize(run, results, accounts_processed)
        if abort_reason:
            run.state = SyncState.ABORTED
            run.abort_reason = abort_reason
        elif run.per_branch_errors:
            run.state = SyncState.COMPLETED_WITH_ERRORS
        else:
            run.state = SyncState.COMPLETED
        run.finished_at = self._clock()
        await self._store.save_sync_run(run)

        logger.info(
            "[Sync %s] %s — accounts=%d forms=%d leads=%d (new=%d, skipped=%d) errors=%d",
            run.run_id,
            run.state.value,
            run.accounts_processed,
            run.forms_processed,
            run.leads_ingested,
            run.leads_created,
            run.leads_skipped,
            len(run.per_branch_errors),
        )
        return run
