"""Tests for the email one-time code ledger."""

import threading
from datetime import datetime, timedelta

import pytest

from uniportal.service import otp as otp_module
from uniportal.service.otp import OtpLedger, generate_code
from uniportal.storage.memory import MemoryStore

SECRET = "ledger-secret-ledger-secret-ledger-00"


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 2, 9, 30, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def ledger(store, sender, clock):
    return OtpLedger(store, sender, SECRET, clock=clock)


@pytest.fixture
def kwame(store):
    return store.create_account(
        "kwame.mensah", "kwame.mensah@uni.example", "unused-hash", mfa_email_enabled=True
    )


def test_generate_code_is_six_digits():
    for _ in range(200):
        code = generate_code()
        assert len(code) == 6
        assert code.isdigit()
        assert 100000 <= int(code) <= 999999


class TestIssue:
    def test_issue_stores_hash_and_sends_code(self, ledger, store, sender, kwame, clock):
        assert ledger.issue(kwame.id) is True

        records = store.list_otp_records(kwame.id)
        assert len(records) == 1
        record = records[0]
        code = sender.last_code(kwame.email)
        assert record.purpose == "mfa"
        assert record.channel == "email"
        assert record.used_at is None
        assert record.code_hash != code
        assert record.code_hash == ledger.hash_code(code)
        assert record.expires_at == clock.now + timedelta(seconds=600)

    def test_email_mentions_lifetime_in_minutes(self, ledger, sender, kwame):
        ledger.issue(kwame.id, ttl_seconds=600)
        assert sender.messages[-1]["subject"] == "Your Verification Code"
        assert "expires in 10 minutes" in sender.messages[-1]["text"]

    def test_ttl_floor_is_sixty_seconds(self, ledger, store, kwame, clock):
        ledger.issue(kwame.id, ttl_seconds=5)
        record = store.list_otp_records(kwame.id)[0]
        assert record.expires_at == clock.now + timedelta(seconds=60)

    def test_reissue_supersedes_previous_code(self, ledger, store, sender, kwame, clock):
        ledger.issue(kwame.id)
        first = sender.last_code(kwame.email)
        clock.advance(5)
        ledger.issue(kwame.id)
        second = sender.last_code(kwame.email)

        live = [r for r in store.list_otp_records(kwame.id, "mfa") if r.used_at is None]
        assert len(live) == 1
        if first != second:
            assert ledger.verify(kwame.id, first).message == "Code already used."
        assert ledger.verify(kwame.id, second).success

    def test_other_purpose_untouched(self, ledger, store, kwame):
        ledger.issue(kwame.id, purpose="password_reset")
        ledger.issue(kwame.id, purpose="mfa")
        live = [r for r in store.list_otp_records(kwame.id) if r.used_at is None]
        assert sorted(r.purpose for r in live) == ["mfa", "password_reset"]

    def test_unknown_subject_returns_false(self, ledger, store, sender):
        assert ledger.issue(999) is False
        assert ledger.issue(0) is False
        assert store.otp_records == {}
        assert sender.messages == []

    def test_delivery_failure_keeps_record_valid(self, store, clock, kwame, failing_sender):
        ledger = OtpLedger(store, failing_sender, SECRET, clock=clock)
        assert ledger.issue(kwame.id) is False

        records = store.list_otp_records(kwame.id)
        assert len(records) == 1
        assert records[0].used_at is None
        assert ledger.verify(kwame.id, failing_sender.last_code(kwame.email)).success

    def test_concurrent_issue_leaves_one_live_record(self, ledger, store, kwame):
        threads = [threading.Thread(target=ledger.issue, args=(kwame.id,)) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        live = [r for r in store.list_otp_records(kwame.id) if r.used_at is None]
        assert len(store.list_otp_records(kwame.id)) == 8
        assert len(live) == 1
        assert ledger._locks == {}

    def test_issue_lock_released_after_store_failure(self, ledger, store, kwame, monkeypatch):
        def _broken(*args, **kwargs):
            raise RuntimeError("store down")

        monkeypatch.setattr(store, "create_otp_record", _broken)
        with pytest.raises(RuntimeError):
            ledger.issue(kwame.id)
        assert ledger._locks == {}


class TestVerify:
    def test_correct_code_consumes_record(self, ledger, store, sender, kwame, clock):
        ledger.issue(kwame.id)
        check = ledger.verify(kwame.id, sender.last_code(kwame.email))
        assert check.success
        assert check.message is None
        assert store.list_otp_records(kwame.id)[0].used_at == clock.now

    def test_surrounding_whitespace_ignored(self, ledger, sender, kwame):
        ledger.issue(kwame.id)
        assert ledger.verify(kwame.id, f"  {sender.last_code(kwame.email)} ").success

    def test_replay_is_rejected(self, ledger, sender, kwame):
        ledger.issue(kwame.id)
        code = sender.last_code(kwame.email)
        assert ledger.verify(kwame.id, code).success
        check = ledger.verify(kwame.id, code)
        assert not check.success
        assert check.message == "Code already used."
        assert check.reason == "otp_used"

    def test_wrong_code_leaves_record_unused(self, ledger, store, kwame):
        ledger.issue(kwame.id)
        check = ledger.verify(kwame.id, "000000")
        assert not check.success
        assert check.message == "Incorrect code."
        assert store.list_otp_records(kwame.id)[0].used_at is None

    @pytest.mark.parametrize("code", [None, "", "   "])
    def test_blank_code_is_invalid(self, ledger, kwame, code):
        ledger.issue(kwame.id)
        assert ledger.verify(kwame.id, code).message == "Invalid code."

    def test_code_for_other_subject_is_incorrect(self, ledger, store, sender, kwame):
        other = store.create_account("lin.zhou", "lin.zhou@uni.example", "unused-hash")
        ledger.issue(kwame.id)
        check = ledger.verify(other.id, sender.last_code(kwame.email))
        assert check.message == "Incorrect code."

    def test_accepted_just_before_expiry(self, ledger, sender, kwame, clock):
        ledger.issue(kwame.id, ttl_seconds=600)
        clock.advance(599)
        assert ledger.verify(kwame.id, sender.last_code(kwame.email)).success

    def test_accepted_at_exact_expiry(self, ledger, sender, kwame, clock):
        ledger.issue(kwame.id, ttl_seconds=600)
        clock.advance(600)
        assert ledger.verify(kwame.id, sender.last_code(kwame.email)).success

    def test_rejected_after_expiry(self, ledger, store, sender, kwame, clock):
        ledger.issue(kwame.id, ttl_seconds=600)
        clock.advance(601)
        check = ledger.verify(kwame.id, sender.last_code(kwame.email))
        assert check.message == "Code expired."
        assert check.reason == "otp_expired"
        assert store.list_otp_records(kwame.id)[0].used_at is None

    def test_repeated_code_matches_newest_record(self, ledger, store, kwame, clock, monkeypatch):
        monkeypatch.setattr(otp_module, "generate_code", lambda: "483920")
        ledger.issue(kwame.id)
        clock.advance(1)
        ledger.issue(kwame.id)

        assert ledger.verify(kwame.id, "483920").success
        records = store.list_otp_records(kwame.id)
        assert all(r.used_at is not None for r in records)

    def test_only_one_concurrent_verify_wins(self, ledger, sender, kwame):
        ledger.issue(kwame.id)
        code = sender.last_code(kwame.email)
        results = []
        barrier = threading.Barrier(6)

        def _attempt():
            barrier.wait()
            results.append(ledger.verify(kwame.id, code).success)

        threads = [threading.Thread(target=_attempt) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1


class TestCompact:
    def test_removes_only_old_records(self, ledger, store, sender, kwame, clock):
        ledger.issue(kwame.id)
        ledger.verify(kwame.id, sender.last_code(kwame.email))
        clock.advance(8 * 24 * 3600)
        ledger.issue(kwame.id)

        removed = ledger.compact(timedelta(days=7))
        assert removed == 1
        remaining = store.list_otp_records(kwame.id)
        assert len(remaining) == 1
        assert remaining[0].used_at is None

    def test_nothing_to_remove(self, ledger, kwame):
        ledger.issue(kwame.id)
        assert ledger.compact() == 0
