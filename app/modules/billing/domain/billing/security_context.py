"""
Transaction-local authorization scope for webhook processing.

Webhooks arrive without an authenticated session, so every data-access call
made while handling one receives an explicit `SecurityContext` and presents
it back to the owning `BillingTransaction`. A context is only honoured while
it is the transaction's current scope and while the transaction is open;
nothing about the scope lives in process-wide state.

On PostgreSQL the scope is mirrored into transaction-local settings
(`set_config(..., true)`) so row-level security policies see the same
tenant. The setting disappears at COMMIT/ROLLBACK.
"""

from __future__ import annotations

import itertools
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.shared.core.exceptions import SecurityContextError
from app.shared.core.ops_metrics import SECURITY_CONTEXT_SWITCH_SECONDS
from app.shared.db.session import get_session_maker, session_backend

logger = structlog.get_logger()

T = TypeVar("T")

_transaction_ids = itertools.count(1)


class SecurityScope(str, Enum):
    SYSTEM = "system"
    TENANT = "tenant"


@dataclass(frozen=True, slots=True)
class SecurityContext:
    """Authorization scope handed to data-access calls. Immutable."""

    scope: SecurityScope
    transaction_id: int
    tenant_id: Optional[int] = None

    @property
    def is_system(self) -> bool:
        return self.scope is SecurityScope.SYSTEM


@dataclass
class BillingTransaction:
    """
    One database transaction plus the scope it currently runs under.

    Created and closed by `billing_transaction()`; queued notifications are
    read by the caller after commit.
    """

    session: AsyncSession
    id: int = field(default_factory=lambda: next(_transaction_ids))
    notifications: list[Any] = field(default_factory=list)
    _current: Optional[SecurityContext] = None
    _closed: bool = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def current_context(self) -> Optional[SecurityContext]:
        return self._current

    def close(self) -> None:
        self._current = None
        self._closed = True

    def queue_notification(self, notification: Any) -> None:
        self.notifications.append(notification)

    def _ensure_open(self) -> None:
        if self._closed:
            raise SecurityContextError(
                "Transaction already closed", details={"transaction_id": self.id}
            )

    def ledger_session(self) -> AsyncSession:
        """
        Session for the idempotency ledger.

        The ledger is engine-owned and not tenant-partitioned, so it only
        requires the transaction to still be open.
        """
        self._ensure_open()
        return self.session

    def session_for(
        self,
        ctx: SecurityContext,
        *,
        tenant_id: Optional[int] = None,
        allow_system: bool = False,
    ) -> AsyncSession:
        """
        Return the session if `ctx` authorizes the requested access.

        `tenant_id` names the tenant whose rows are touched; `allow_system`
        marks the subscription-mapping lookup, the only access system scope
        may perform.
        """
        self._ensure_open()
        if ctx.transaction_id != self.id or ctx != self._current:
            raise SecurityContextError(
                "Security context is not active on this transaction",
                details={"transaction_id": self.id, "scope": ctx.scope.value},
            )
        if ctx.is_system:
            if not allow_system:
                raise SecurityContextError(
                    "System scope may only resolve subscription ownership",
                    details={"transaction_id": self.id},
                )
            return self.session
        if tenant_id is not None and tenant_id != ctx.tenant_id:
            raise SecurityContextError(
                "Tenant scope mismatch",
                details={"scope_tenant_id": ctx.tenant_id, "tenant_id": tenant_id},
            )
        return self.session

    async def _apply(self, ctx: Optional[SecurityContext]) -> None:
        self._ensure_open()
        scope_label = ctx.scope.value if ctx else "none"
        start = time.perf_counter()
        if session_backend(self.session) == "postgresql":
            await self.session.execute(
                text(
                    "SELECT set_config('app.security_scope', :scope, true), "
                    "set_config('app.current_tenant_id', :tid, true)"
                ),
                {
                    "scope": ctx.scope.value if ctx else "",
                    "tid": str(ctx.tenant_id) if ctx and ctx.tenant_id is not None else "",
                },
            )
        SECURITY_CONTEXT_SWITCH_SECONDS.labels(scope=scope_label).observe(
            time.perf_counter() - start
        )
        self._current = ctx
        logger.debug(
            "security_context_switched",
            scope=scope_label,
            tenant_id=ctx.tenant_id if ctx else None,
        )


async def _run_scoped(
    tx: BillingTransaction,
    ctx: SecurityContext,
    fn: Callable[[SecurityContext], Awaitable[T]],
) -> T:
    previous = tx.current_context
    await tx._apply(ctx)
    try:
        return await fn(ctx)
    finally:
        # A failed statement leaves the transaction unusable; the rollback
        # discards the setting anyway.
        if not tx.closed and tx.current_context == ctx:
            try:
                await tx._apply(previous)
            except Exception as exc:
                logger.warning("security_context_restore_failed", error=str(exc))
                tx._current = None


async def with_system_context(
    tx: BillingTransaction, fn: Callable[[SecurityContext], Awaitable[T]]
) -> T:
    """Run `fn` under system scope and restore the previous scope afterwards."""
    ctx = SecurityContext(scope=SecurityScope.SYSTEM, transaction_id=tx.id)
    return await _run_scoped(tx, ctx, fn)


async def with_tenant_context(
    tx: BillingTransaction,
    tenant_id: int,
    fn: Callable[[SecurityContext], Awaitable[T]],
) -> T:
    """Run `fn` under the scope of one tenant and restore the previous scope afterwards."""
    if not isinstance(tenant_id, int) or isinstance(tenant_id, bool) or tenant_id <= 0:
        raise SecurityContextError(
            "Tenant scope requires a positive tenant id",
            details={"tenant_id": repr(tenant_id)},
        )
    ctx = SecurityContext(
        scope=SecurityScope.TENANT, transaction_id=tx.id, tenant_id=tenant_id
    )
    return await _run_scoped(tx, ctx, fn)


@asynccontextmanager
async def billing_transaction(
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncIterator[BillingTransaction]:
    """
    Open a session and one transaction around it.

    Commits when the block exits normally and rolls back on any exception.
    The transaction object is closed either way, which invalidates every
    context handed out during it.
    """
    maker = session_maker or get_session_maker()
    async with maker() as session:
        tx = BillingTransaction(session=session)
        try:
            async with session.begin():
                yield tx
        finally:
            tx.close()
