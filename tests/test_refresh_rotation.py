"""Tests for refresh-token rotation, theft detection and session management."""

import asyncio
import threading
from contextlib import contextmanager
from datetime import timedelta

import pytest

from warden.service.errors import AuthenticationError, NotFoundError, RefreshTokenInvalid
from warden.service.tokens import hash_token

PASSWORD = "correct horse battery"


async def _login(services, username="alice", **kwargs):
    if services.store.get_account_by_username(username) is None:
        services.accounts.register(username, PASSWORD)
    return await services.auth.login(username, PASSWORD, **kwargs)


class TestRotation:
    async def test_refresh_rotates_the_token(self, services):
        _, session, pair = await _login(services)
        _, rotated, new_pair = await services.auth.refresh_tokens(pair.refresh_token)

        assert rotated.id == session.id
        assert rotated.generation == 1
        assert new_pair.refresh_token != pair.refresh_token
        stored = services.store.get_session(session.id)
        assert stored.refresh_token_hash == hash_token(new_pair.refresh_token)
        assert stored.previous_refresh_token_hash == hash_token(pair.refresh_token)

    async def test_only_hashes_are_stored(self, services):
        _, session, pair = await _login(services)
        stored = services.store.get_session(session.id)
        assert pair.refresh_token not in stored.refresh_token_hash
        assert stored.refresh_token_hash == hash_token(pair.refresh_token)

    async def test_chain_of_rotations(self, services):
        _, session, pair = await _login(services)
        for expected_generation in range(1, 4):
            _, rotated, pair = await services.auth.refresh_tokens(pair.refresh_token)
            assert rotated.generation == expected_generation
        assert services.store.get_session(session.id).is_active()

    async def test_new_access_token_authenticates(self, services):
        account, _, pair = await _login(services)
        _, _, new_pair = await services.auth.refresh_tokens(pair.refresh_token)
        ctx = await services.auth.authenticate(f"Bearer {new_pair.access_token}")
        assert ctx.user_id == account.id
        assert ctx.session_id == new_pair.session_id


class TestTheftDetection:
    async def test_stale_token_revokes_the_session(self, services):
        _, session, first = await _login(services)
        await services.auth.refresh_tokens(first.refresh_token)

        with pytest.raises(RefreshTokenInvalid):
            await services.auth.refresh_tokens(first.refresh_token)
        assert services.store.get_session(session.id).revoked

    async def test_revocation_cascades_to_the_legitimate_token(self, services):
        _, _, first = await _login(services)
        _, _, second = await services.auth.refresh_tokens(first.refresh_token)

        with pytest.raises(RefreshTokenInvalid):
            await services.auth.refresh_tokens(first.refresh_token)
        with pytest.raises(RefreshTokenInvalid):
            await services.auth.refresh_tokens(second.refresh_token)

    async def test_access_token_of_revoked_lineage_is_rejected(self, services):
        _, _, first = await _login(services)
        _, _, second = await services.auth.refresh_tokens(first.refresh_token)
        with pytest.raises(RefreshTokenInvalid):
            await services.auth.refresh_tokens(first.refresh_token)
        with pytest.raises(AuthenticationError):
            await services.auth.authenticate(f"Bearer {second.access_token}")

    async def test_other_sessions_survive_theft_in_one_lineage(self, services):
        _, _, stolen = await _login(services)
        _, other, other_pair = await _login(services)
        await services.auth.refresh_tokens(stolen.refresh_token)
        with pytest.raises(RefreshTokenInvalid):
            await services.auth.refresh_tokens(stolen.refresh_token)
        assert services.store.get_session(other.id).is_active()
        await services.auth.refresh_tokens(other_pair.refresh_token)

    async def test_failure_messages_are_indistinguishable(self, services):
        _, _, first = await _login(services)
        await services.auth.refresh_tokens(first.refresh_token)
        with pytest.raises(RefreshTokenInvalid) as theft:
            await services.auth.refresh_tokens(first.refresh_token)
        with pytest.raises(RefreshTokenInvalid) as unknown:
            await services.auth.refresh_tokens("never-issued")
        assert theft.value.message == unknown.value.message
        assert theft.value.reason != unknown.value.reason


class TestNoStateChangeFailures:
    async def test_unknown_and_empty_tokens(self, services):
        await _login(services)
        for token in ("", "   ", "not-a-real-token"):
            with pytest.raises(RefreshTokenInvalid):
                await services.auth.refresh_tokens(token)

    async def test_expired_session_is_not_revoked(self, services):
        _, session, pair = await _login(services)
        later = session.expires_at + timedelta(seconds=1)
        with pytest.raises(RefreshTokenInvalid):
            await services.auth.refresh_tokens(pair.refresh_token, now=later)
        assert not services.store.get_session(session.id).revoked

    async def test_logged_out_session_cannot_refresh(self, services):
        _, session, pair = await _login(services)
        assert await services.auth.logout(session.id)
        assert not await services.auth.logout(session.id)
        with pytest.raises(RefreshTokenInvalid):
            await services.auth.refresh_tokens(pair.refresh_token)

    async def test_locked_account_cannot_refresh(self, services):
        account, session, pair = await _login(services)
        services.accounts.lock(account.id, minutes=10)
        with pytest.raises(RefreshTokenInvalid):
            await services.auth.refresh_tokens(pair.refresh_token)
        stored = services.store.get_session(session.id)
        assert not stored.revoked
        assert stored.refresh_token_hash == hash_token(pair.refresh_token)

    async def test_signed_access_token_is_rejected_as_refresh(self, services):
        _, session, pair = await _login(services)
        with pytest.raises(RefreshTokenInvalid):
            await services.auth.refresh_tokens(pair.access_token)
        assert services.store.get_session(session.id).is_active()

    async def test_compare_and_swap_loser_is_not_treated_as_theft(self, services, monkeypatch):
        _, session, pair = await _login(services)
        monkeypatch.setattr(services.store, "rotate_session_hash", lambda *args, **kwargs: None)
        with pytest.raises(RefreshTokenInvalid):
            await services.auth.refresh_tokens(pair.refresh_token)
        assert not services.store.get_session(session.id).revoked


class TestReuseGrace:
    @pytest.fixture
    def grace_services(self, make_services):
        return make_services(refresh_reuse_grace_seconds=30)

    async def test_immediate_replay_within_grace_does_not_revoke(self, grace_services):
        _, session, first = await _login(grace_services)
        _, _, second = await grace_services.auth.refresh_tokens(first.refresh_token)

        with pytest.raises(RefreshTokenInvalid):
            await grace_services.auth.refresh_tokens(first.refresh_token)
        assert grace_services.store.get_session(session.id).is_active()
        await grace_services.auth.refresh_tokens(second.refresh_token)

    async def test_replay_after_grace_revokes(self, grace_services):
        _, session, first = await _login(grace_services)
        _, rotated, _ = await grace_services.auth.refresh_tokens(first.refresh_token)
        later = rotated.rotated_at + timedelta(seconds=31)
        with pytest.raises(RefreshTokenInvalid):
            await grace_services.auth.refresh_tokens(first.refresh_token, now=later)
        assert grace_services.store.get_session(session.id).revoked

    async def test_older_generation_is_never_within_grace(self, grace_services):
        _, session, first = await _login(grace_services)
        _, _, second = await grace_services.auth.refresh_tokens(first.refresh_token)
        await grace_services.auth.refresh_tokens(second.refresh_token)
        with pytest.raises(RefreshTokenInvalid):
            await grace_services.auth.refresh_tokens(first.refresh_token)
        assert grace_services.store.get_session(session.id).revoked


class TestConcurrentRotation:
    def _race(self, services, token, monkeypatch, workers=8):
        """Refresh ``token`` from ``workers`` threads that all read the session first.

        Every worker passes the pre-lock lookup before any of them may take
        the session lock, so all of them present a token that was current
        when their request arrived.
        """
        locks = services.auth.locks
        original_hold = locks.hold
        all_read = threading.Barrier(workers)

        @contextmanager
        def gated_hold(session_id):
            all_read.wait(timeout=10)
            with original_hold(session_id):
                yield

        monkeypatch.setattr(locks, "hold", gated_hold)
        start = threading.Barrier(workers)
        outcomes = []
        outcomes_lock = threading.Lock()

        def worker():
            start.wait()
            try:
                result = asyncio.run(services.auth.refresh_tokens(token))
                outcome = ("ok", result[2].refresh_token)
            except RefreshTokenInvalid:
                outcome = ("rejected", None)
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return outcomes

    def test_same_token_rotates_exactly_once(self, services, monkeypatch):
        _, session, pair = asyncio.run(_login(services))
        outcomes = self._race(services, pair.refresh_token, monkeypatch)
        winners = [token for kind, token in outcomes if kind == "ok"]
        assert len(winners) == 1
        stored = services.store.get_session(session.id)
        assert stored.is_active()
        assert stored.generation == 1
        assert stored.refresh_token_hash == hash_token(winners[0])

    def test_duplicate_refresh_leaves_winner_usable(self, services, monkeypatch):
        _, session, pair = asyncio.run(_login(services))
        outcomes = self._race(services, pair.refresh_token, monkeypatch, workers=2)
        assert sorted(kind for kind, _ in outcomes) == ["ok", "rejected"]
        [winner] = [token for kind, token in outcomes if kind == "ok"]
        _, rotated, _ = asyncio.run(services.auth.refresh_tokens(winner))
        assert rotated.id == session.id
        assert rotated.generation == 2

    def test_stale_token_after_race_still_revokes(self, services, monkeypatch):
        _, session, pair = asyncio.run(_login(services))
        self._race(services, pair.refresh_token, monkeypatch, workers=2)
        with pytest.raises(RefreshTokenInvalid):
            asyncio.run(services.auth.refresh_tokens(pair.refresh_token))
        assert services.store.get_session(session.id).revoked

    def test_retry_storm_within_grace_keeps_session(self, make_services, monkeypatch):
        services = make_services(refresh_reuse_grace_seconds=30)
        _, session, pair = asyncio.run(_login(services))
        outcomes = self._race(services, pair.refresh_token, monkeypatch)
        winners = [token for kind, token in outcomes if kind == "ok"]
        assert len(winners) == 1
        assert services.store.get_session(session.id).is_active()
        asyncio.run(services.auth.refresh_tokens(winners[0]))

    def test_locks_are_released(self, services, monkeypatch):
        _, _, pair = asyncio.run(_login(services))
        self._race(services, pair.refresh_token, monkeypatch, workers=4)
        assert services.auth.locks.active_count() == 0


class TestSessionManagement:
    async def test_list_marks_current_session(self, services):
        account, first, _ = await _login(services, device_name="laptop")
        _, second, _ = await _login(services, device_name="phone")
        views = services.auth.list_sessions(account.id, second.id)
        assert {v.id for v in views} == {first.id, second.id}
        assert [v.is_current for v in views if v.id == second.id] == [True]
        assert [v.is_current for v in views if v.id == first.id] == [False]

    async def test_revoke_all_includes_current(self, services):
        account, _, _ = await _login(services)
        await _login(services)
        assert await services.auth.revoke_all_sessions(account.id) == 2
        assert services.auth.list_sessions(account.id) == []

    async def test_revoke_others_keeps_current(self, services):
        account, current, _ = await _login(services)
        await _login(services)
        await _login(services)
        assert await services.auth.revoke_other_sessions(account.id, current.id) == 2
        assert [v.id for v in services.auth.list_sessions(account.id)] == [current.id]

    async def test_revoking_a_foreign_session_is_not_found(self, services):
        _, session, _ = await _login(services, "alice")
        bob, _, _ = await _login(services, "bob")
        with pytest.raises(NotFoundError):
            await services.auth.revoke_session(bob.id, session.id)
        assert services.store.get_session(session.id).is_active()

    async def test_delete_expired_sessions(self, services):
        _, session, _ = await _login(services)
        later = session.expires_at + timedelta(days=1)
        assert services.auth.delete_expired_sessions(later) == 1
        assert services.store.get_session(session.id) is None


class TestBearerAuthentication:
    async def test_missing_and_malformed_headers(self, services):
        for header in (None, "", "Basic abc", "Bearer ", "Bearer not.a.jwt"):
            with pytest.raises(AuthenticationError):
                await services.auth.authenticate(header)

    async def test_access_token_carries_refresh_deny(self, services):
        account, _, pair = await _login(services)
        ctx = await services.auth.authenticate(f"Bearer {pair.access_token}")
        assert f"deny;api:auth:refresh;userId={account.id}" in [str(d) for d in ctx.scope]
        assert not ctx.has_permission("api:auth:refresh", {"userId": account.id})
        assert ctx.has_permission("api:auth:me", {"userId": account.id})

    async def test_context_reports_token_expiry(self, services):
        _, _, pair = await _login(services)
        ctx = await services.auth.authenticate(f"Bearer {pair.access_token}")
        assert ctx.expires_at == pair.access_expires_at.replace(microsecond=0)
        assert ctx.expires_at.tzinfo is not None

    async def test_expired_access_token_is_rejected(self, services):
        _, _, pair = await _login(services)
        later = pair.access_expires_at + timedelta(minutes=5)
        with pytest.raises(AuthenticationError):
            services.auth.authenticate_token(pair.access_token, now=later)

    async def test_token_from_another_secret_is_rejected(self, services, make_services):
        _, _, pair = await _login(services)
        other = make_services(jwt_secret="x" * 48)
        with pytest.raises(AuthenticationError):
            await other.auth.authenticate(f"Bearer {pair.access_token}")
