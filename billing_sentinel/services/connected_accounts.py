"""
Connected account service - Stripe Connect accounts of professionals.

Stripe SDK calls are synchronous and run via run_in_executor to avoid blocking
the event loop. Capability flags are cached in connected_accounts.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from billing_sentinel.exceptions import PermanentDownstreamError, TransientError

logger = logging.getLogger(__name__)


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous Stripe SDK call in the default thread pool executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


def _classify_stripe_error(e: Exception) -> Exception:
    import stripe

    if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError)):
        return TransientError(f"Stripe unavailable: {e}")
    status = getattr(e, "http_status", None)
    if status is not None and status >= 500:
        return TransientError(f"Stripe returned {status}: {e}")
    return PermanentDownstreamError(f"Stripe rejected request: {e}")


class ConnectedAccountService:
    def __init__(self, session_factory, api_key_provider: Callable[[], str]):
        self.session_factory = session_factory
        self.api_key_provider = api_key_provider

    async def refresh_account(self, account_id: str):
        """Fetch the account from Stripe and cache its capability flags."""
        import stripe

        api_key = self.api_key_provider()
        try:
            account = await _run_sync(stripe.Account.retrieve, account_id, api_key=api_key)
        except stripe.StripeError as e:
            raise _classify_stripe_error(e) from e

        return await self._upsert(
            account_id,
            charges_enabled=bool(account.get("charges_enabled")),
            payouts_enabled=bool(account.get("payouts_enabled")),
            details_submitted=bool(account.get("details_submitted")),
            is_active=True,
            deactivated_at=None,
        )

    async def deactivate_account(self, account_id: str):
        """The professional disconnected the platform - stop routing payouts to them."""
        return await self._upsert(
            account_id,
            charges_enabled=False,
            payouts_enabled=False,
            is_active=False,
            deactivated_at=datetime.now(timezone.utc),
        )

    async def get_account(self, account_id: str):
        from billing_sentinel.models.connected_account import ConnectedAccount

        async with self.session_factory() as session:
            return await session.get(ConnectedAccount, account_id)

    async def _upsert(self, account_id: str, **fields):
        from billing_sentinel.models.connected_account import ConnectedAccount

        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            account: Optional[ConnectedAccount] = await session.get(ConnectedAccount, account_id)
            if account is None:
                account = ConnectedAccount(account_id=account_id)
                session.add(account)
            for key, value in fields.items():
                setattr(account, key, value)
            account.refreshed_at = now
            await session.commit()

        logger.info(
            "Connected account %s cached (active=%s charges=%s payouts=%s)",
            account_id, account.is_active, account.charges_enabled, account.payouts_enabled,
        )
        return account
