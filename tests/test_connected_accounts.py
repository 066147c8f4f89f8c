"""
Tests for billing_sentinel/services/connected_accounts.py - Stripe Connect account cache.
"""
import pytest
import stripe
from unittest.mock import patch

from billing_sentinel.exceptions import PermanentDownstreamError, TransientError
from billing_sentinel.services.connected_accounts import ConnectedAccountService


@pytest.fixture
def service(session_factory):
    return ConnectedAccountService(session_factory, lambda: "sk_test_abc123")


class TestRefreshAccount:
    @pytest.mark.asyncio
    async def test_caches_capabilities(self, service):
        account = {"id": "acct_1", "charges_enabled": True, "payouts_enabled": True, "details_submitted": True}
        with patch("stripe.Account.retrieve", return_value=account) as retrieve:
            cached = await service.refresh_account("acct_1")

        retrieve.assert_called_once_with("acct_1", api_key="sk_test_abc123")
        assert cached.charges_enabled is True
        assert cached.is_active is True

        stored = await service.get_account("acct_1")
        assert stored.payouts_enabled is True
        assert stored.details_submitted is True

    @pytest.mark.asyncio
    async def test_refresh_updates_existing_row(self, service):
        with patch("stripe.Account.retrieve", return_value={"charges_enabled": True}):
            await service.refresh_account("acct_1")
        with patch("stripe.Account.retrieve", return_value={"charges_enabled": False}):
            await service.refresh_account("acct_1")

        stored = await service.get_account("acct_1")
        assert stored.charges_enabled is False

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, service):
        with patch("stripe.Account.retrieve", side_effect=stripe.APIConnectionError("no network")):
            with pytest.raises(TransientError):
                await service.refresh_account("acct_1")

    @pytest.mark.asyncio
    async def test_invalid_request_is_permanent(self, service):
        error = stripe.InvalidRequestError("No such account", "account", http_status=404)
        with patch("stripe.Account.retrieve", side_effect=error):
            with pytest.raises(PermanentDownstreamError):
                await service.refresh_account("acct_missing")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, service):
        error = stripe.APIError("Stripe is down", http_status=503)
        with patch("stripe.Account.retrieve", side_effect=error):
            with pytest.raises(TransientError):
                await service.refresh_account("acct_1")


class TestDeactivateAccount:
    @pytest.mark.asyncio
    async def test_deactivates_unknown_account(self, service):
        account = await service.deactivate_account("acct_gone")
        assert account.is_active is False
        assert account.deactivated_at is not None

    @pytest.mark.asyncio
    async def test_deactivates_cached_account(self, service):
        with patch("stripe.Account.retrieve", return_value={"charges_enabled": True, "payouts_enabled": True}):
            await service.refresh_account("acct_1")
        await service.deactivate_account("acct_1")

        stored = await service.get_account("acct_1")
        assert stored.is_active is False
        assert stored.payouts_enabled is False

    @pytest.mark.asyncio
    async def test_get_missing_account(self, service):
        assert await service.get_account("acct_none") is None
