"""Refresh-token rotation and reuse detection."""

import asyncio
from datetime import timedelta

import pytest

from fleetauth.service import audit as audit_kinds
from fleetauth.service.auth import LoginResult
from fleetauth.service.errors import (
    AccountBanned,
    AuthenticationError,
    InvalidRefreshToken,
    RefreshExpired,
)
from fleetauth.service.tokens import fingerprint

STANDARD_PASSWORD = "Fleet-Pass-2024"
DRIVER_PIN = "4821"


async def _login(service, identifier=None, secret=STANDARD_PASSWORD):
    result = await service.login(identifier or "jdoe", secret)
    assert result.authenticated
    return result.tokens


class TestRotation:
    """Each refresh replaces the stored fingerprint."""

    async def test_refresh_rotates_token(self, auth_service, memory_store, standard_account):
        t0 = await _login(auth_service)
        result = await auth_service.refresh(t0.refresh_token)
        assert result.status == LoginResult.AUTHENTICATED
        t1 = result.tokens
        assert t1.refresh_token != t0.refresh_token
        stored = memory_store.get_account(standard_account.id)
        assert stored.refresh_token_fingerprint == fingerprint(t1.refresh_token)

    async def test_refreshed_claims_reflect_current_account(
        self, auth_service, memory_store, standard_account
    ):
        from fleetauth.storage.models import Role

        t0 = await _login(auth_service)
        account = memory_store.get_account(standard_account.id)
        account.role = Role.SUPERVISOR
        memory_store.save_account(account)
        t1 = (await auth_service.refresh(t0.refresh_token)).tokens
        claims = auth_service.authenticate_access(t1.access_token)
        assert claims["role"] == "supervisor"

    async def test_driver_refresh_uses_plate_subject(self, auth_service, driver_account):
        t0 = await _login(auth_service, "T991-EFN", DRIVER_PIN)
        payload = auth_service.tokens.verify_refresh(t0.refresh_token)
        assert payload["sub"] == "driver_T991_EFN"
        result = await auth_service.refresh(t0.refresh_token)
        assert result.account.id == driver_account.id

    async def test_access_token_is_not_a_refresh_token(self, auth_service, standard_account):
        t0 = await _login(auth_service)
        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(t0.access_token)

    async def test_garbage_token_rejected(self, auth_service, standard_account):
        await _login(auth_service)
        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh("not.a.jwt")


class TestReuseDetection:
    """A rotated-out token kills the whole chain."""

    async def test_replayed_token_revokes_chain(
        self, auth_service, memory_store, standard_account, audit_sink
    ):
        t0 = await _login(auth_service)
        t1 = (await auth_service.refresh(t0.refresh_token)).tokens

        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(t0.refresh_token)
        assert memory_store.get_account(standard_account.id).refresh_token_fingerprint is None

        # The legitimate holder of T1 is now logged out as well
        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(t1.refresh_token)

        await auth_service.flush_background()
        assert audit_kinds.TOKEN_REUSE in audit_sink.kinds()

    async def test_only_latest_login_chain_is_live(self, auth_service, standard_account):
        first = await _login(auth_service)
        second = await _login(auth_service)
        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(first.refresh_token)
        # Reuse of the first chain revoked the second too
        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(second.refresh_token)

    async def test_concurrent_refresh_has_one_winner(self, auth_service, standard_account):
        t0 = await _login(auth_service)
        results = await asyncio.gather(
            auth_service.refresh(t0.refresh_token),
            auth_service.refresh(t0.refresh_token),
            return_exceptions=True,
        )
        successes = [r for r in results if isinstance(r, LoginResult)]
        failures = [r for r in results if isinstance(r, InvalidRefreshToken)]
        assert len(successes) == 1
        assert len(failures) == 1

    async def test_lost_compare_and_set_clears_chain(
        self, auth_service, memory_store, standard_account
    ):
        t0 = await _login(auth_service)
        original = memory_store.compare_and_set_refresh_fingerprint

        def racing_cas(account_id, expected, new):
            # Another node rotates between our read and our write
            original(account_id, expected, "rotated-elsewhere")
            return original(account_id, expected, new)

        memory_store.compare_and_set_refresh_fingerprint = racing_cas
        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(t0.refresh_token)
        assert memory_store.get_account(standard_account.id).refresh_token_fingerprint is None


class TestExpiryAndGates:
    """Expiry and account state checks during refresh."""

    async def test_expired_refresh_is_not_reuse(
        self, auth_service, memory_store, standard_account
    ):
        t0 = await _login(auth_service)
        later = auth_service._now() + timedelta(days=8)
        auth_service._now = lambda: later
        with pytest.raises(RefreshExpired):
            await auth_service.refresh(t0.refresh_token)
        # Nothing suspicious happened, so the fingerprint stays
        assert memory_store.get_account(standard_account.id).refresh_token_fingerprint

    async def test_banned_account_cannot_refresh(
        self, auth_service, memory_store, standard_account
    ):
        t0 = await _login(auth_service)
        memory_store.set_account_flags(standard_account.id, is_banned=True)
        with pytest.raises(AccountBanned):
            await auth_service.refresh(t0.refresh_token)

    async def test_deleted_account_cannot_refresh(
        self, auth_service, memory_store, standard_account
    ):
        t0 = await _login(auth_service)
        memory_store.set_account_flags(standard_account.id, is_deleted=True)
        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(t0.refresh_token)


class TestAccessTokens:
    """Bearer-token verification for the HTTP layer."""

    async def test_expired_access_token(self, auth_service, standard_account):
        t0 = await _login(auth_service)
        later = auth_service._now() + timedelta(hours=25)
        auth_service._now = lambda: later
        with pytest.raises(AuthenticationError) as exc:
            auth_service.authenticate_access(t0.access_token)
        assert exc.value.error_code == "token_expired"

    async def test_refresh_token_is_not_an_access_token(self, auth_service, standard_account):
        t0 = await _login(auth_service)
        with pytest.raises(AuthenticationError) as exc:
            auth_service.authenticate_access(t0.refresh_token)
        assert exc.value.error_code == "invalid_token"
