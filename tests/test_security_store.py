"""Unit tests for auth/store.py -- account locks, MFA flags, IP blocks, audit rows.

Covers:
- temporary locks hold until locked_until and lift lazily afterwards
- a temporary lock never shortens a permanent or longer lock
- unlock_account() reports whether a lock was lifted
- require_mfa() / clear_mfa_requirement() on a user with no prior row
- block_ip() / is_ip_blocked() / unblock_ip()
- append_audit() / recent_audit() ordering and per-user filtering
- prune_audit() removes rows older than the cutoff
"""

from auth.models import AuditRecord


class TestAccountLocks:
    def test_unknown_user_is_unlocked(self, security_store):
        assert security_store.lock_status("nobody") == (False, None)
        assert not security_store.get_account("nobody").is_locked

    def test_temporary_lock_holds_then_lifts(self, security_store, clock):
        security_store.lock_account("user-1", "test", until=clock() + 1800)

        locked, retry_after = security_store.lock_status("user-1")
        assert locked
        assert retry_after == 1801

        clock.advance(1799)
        assert security_store.lock_status("user-1")[0]

        clock.advance(2)
        assert security_store.lock_status("user-1") == (False, None)
        assert not security_store.get_account("user-1").is_locked

    def test_permanent_lock_has_no_retry_after(self, security_store, clock):
        security_store.lock_account("user-1", "severe")
        clock.advance(10 * 365 * 24 * 3600)
        assert security_store.lock_status("user-1") == (True, None)

    def test_temporary_lock_does_not_shorten_permanent(self, security_store, clock):
        security_store.lock_account("user-1", "severe")
        security_store.lock_account("user-1", "temporary", until=clock() + 60)
        account = security_store.get_account("user-1")
        assert account.locked_until is None
        assert account.locked_reason == "severe"

    def test_temporary_lock_does_not_shorten_longer_lock(self, security_store, clock):
        security_store.lock_account("user-1", "long", until=clock() + 3600)
        security_store.lock_account("user-1", "short", until=clock() + 60)
        assert security_store.get_account("user-1").locked_until == clock() + 3600

    def test_unlock(self, security_store):
        assert security_store.unlock_account("user-1") is False
        security_store.lock_account("user-1", "severe")
        assert security_store.unlock_account("user-1") is True
        assert security_store.lock_status("user-1") == (False, None)


class TestMfaAndIpBlocks:
    def test_require_and_clear_mfa(self, security_store):
        security_store.require_mfa("user-1", "suspicious_location")
        account = security_store.get_account("user-1")
        assert account.mfa_required
        assert account.mfa_required_reason == "suspicious_location"
        assert not account.is_locked

        security_store.clear_mfa_requirement("user-1")
        assert not security_store.get_account("user-1").mfa_required

    def test_ip_block_lifecycle(self, security_store):
        assert not security_store.is_ip_blocked("203.0.113.7")
        assert not security_store.is_ip_blocked(None)

        security_store.block_ip("203.0.113.7", "brute_force_attempt")
        security_store.block_ip("203.0.113.7", "again")
        assert security_store.is_ip_blocked("203.0.113.7")
        blocked = security_store.list_blocked_ips()
        assert [b.ip_address for b in blocked] == ["203.0.113.7"]
        assert blocked[0].reason == "again"

        assert security_store.unblock_ip("203.0.113.7")
        assert not security_store.unblock_ip("203.0.113.7")
        assert not security_store.is_ip_blocked("203.0.113.7")


class TestAuditRows:
    def _record(self, type, ts, user_id=None, success=True):
        return AuditRecord(type=type, domain="auth.example.com", timestamp=ts, user_id=user_id, success=success, metadata={"n": ts})

    def test_recent_audit_newest_first_and_filtered(self, security_store):
        security_store.append_audit(self._record("sign_in", 1.0, "user-1"))
        security_store.append_audit(self._record("sign_in", 2.0, "user-2"))
        security_store.append_audit(self._record("sign_out", 3.0, "user-1", success=False))

        rows = security_store.recent_audit()
        assert [r.timestamp for r in rows] == [3.0, 2.0, 1.0]
        assert rows[0].success is False
        assert rows[0].metadata == {"n": 3.0}

        mine = security_store.recent_audit(user_id="user-1")
        assert [r.type for r in mine] == ["sign_out", "sign_in"]
        assert security_store.count_audit() == 3

    def test_prune_audit(self, security_store):
        for ts in (1.0, 2.0, 3.0):
            security_store.append_audit(self._record("sign_in", ts))
        assert security_store.prune_audit(older_than=2.5) == 2
        assert [r.timestamp for r in security_store.recent_audit()] == [3.0]

    def test_ping(self, security_store):
        assert security_store.ping()
