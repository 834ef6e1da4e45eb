"""Tests for single-use tokens and verification codes."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from sqlmodel import Session, select

from carelink.errors import (
    AlreadyUsedError,
    BlockedError,
    DeliveryError,
    ExpiredError,
    NotFoundError,
    WrongCodeError,
)
from carelink.models.token import AccessToken, TokenPurpose, TokenStatus
from carelink.models.verification import CodeStatus, DeliveryStatus, VerificationCode
from carelink.services.tokens import TokenStore, hash_token
from carelink.services.verification import VerificationCodeStore
from carelink.utils.crypto import sha256_hash


def _issue(tokens: TokenStore, session: Session, **kwargs) -> tuple[str, str]:
    secret, id_hash = tokens.issue(session, "patient-001", "message-1", **kwargs)
    session.commit()
    return secret, id_hash


class TestTokenStore:
    def test_only_hash_is_stored(self, tokens: TokenStore, session: Session) -> None:
        secret, id_hash = _issue(tokens, session)
        assert id_hash == hash_token(secret)
        row = session.get(AccessToken, id_hash)
        assert row.status == TokenStatus.ACTIVE.value
        assert secret not in {row.id_hash, row.subject_id, row.content_ref}

    def test_default_expiry_24h(self, tokens: TokenStore, session: Session, clock) -> None:
        _, id_hash = _issue(tokens, session)
        row = session.get(AccessToken, id_hash)
        assert row.expires_at - row.created_at == timedelta(hours=24)

    def test_redeem_once(self, tokens: TokenStore, session: Session) -> None:
        secret, _ = _issue(tokens, session)
        token = tokens.redeem(session, secret)
        assert token.status == TokenStatus.CODE_PENDING.value
        with pytest.raises(AlreadyUsedError):
            tokens.redeem(session, secret)

    def test_redeem_unknown(self, tokens: TokenStore, session: Session) -> None:
        with pytest.raises(NotFoundError):
            tokens.redeem(session, "x" * 43)

    def test_redeem_expired_marks_expired(self, tokens: TokenStore, session: Session, clock) -> None:
        secret, id_hash = _issue(tokens, session, ttl=timedelta(hours=1))
        clock.advance(hours=2)
        with pytest.raises(ExpiredError):
            tokens.redeem(session, secret)
        assert session.get(AccessToken, id_hash).status == TokenStatus.EXPIRED.value

    def test_lookup_does_not_consume(self, tokens: TokenStore, session: Session) -> None:
        secret, _ = _issue(tokens, session, purpose=TokenPurpose.INVITE)
        assert tokens.lookup(session, secret).status == TokenStatus.ACTIVE.value
        assert tokens.lookup(session, secret).purpose == TokenPurpose.INVITE.value

    def test_revoke(self, tokens: TokenStore, session: Session) -> None:
        secret, id_hash = _issue(tokens, session)
        assert tokens.revoke(session, id_hash) is True
        assert tokens.revoke(session, id_hash) is False
        with pytest.raises(AlreadyUsedError):
            tokens.redeem(session, secret)

    def test_concurrent_redeem_single_winner(self, file_engine) -> None:
        tokens = TokenStore()
        with Session(file_engine) as setup:
            secret, id_hash = tokens.issue(setup, "patient-001", "message-1")
            setup.commit()

        results: list[str] = []
        barrier = threading.Barrier(5)

        def redeem() -> None:
            with Session(file_engine) as db:
                barrier.wait()
                try:
                    tokens.redeem(db, secret)
                    results.append("won")
                except AlreadyUsedError:
                    results.append("lost")

        threads = [threading.Thread(target=redeem) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("won") == 1
        assert results.count("lost") == 4


@pytest.fixture(name="pending_code")
def pending_code_fixture(tokens: TokenStore, codes: VerificationCodeStore, session: Session, notifier):
    secret, _ = _issue(tokens, session)
    token = tokens.redeem(session, secret)
    code, code_id = codes.issue(session, token, "provider@practice.example")
    return code, code_id, token


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestVerificationCodeStore:
    def test_issue_sends_and_stores_hash(self, pending_code, session: Session, notifier) -> None:
        code, code_id, _ = pending_code
        row = session.get(VerificationCode, code_id)
        assert row.code_hash == sha256_hash(code.encode())
        assert row.status == CodeStatus.PENDING.value
        assert row.attempts == 0
        assert row.max_attempts == 5
        assert row.expires_at - row.created_at == timedelta(minutes=10)
        assert row.delivery_status == DeliveryStatus.SENT.value
        assert notifier.last_code("provider@practice.example") == code

    def test_delivery_failure_recorded(self, tokens, codes, session: Session, notifier) -> None:
        secret, _ = _issue(tokens, session)
        token = tokens.redeem(session, secret)
        notifier.fail_for.add("down@practice.example")
        with pytest.raises(DeliveryError):
            codes.issue(session, token, "down@practice.example")
        row = session.exec(select(VerificationCode)).one()
        assert row.delivery_status == DeliveryStatus.FAILED.value

    def test_verify_success_uses_token(self, pending_code, codes, session: Session) -> None:
        code, code_id, token = pending_code
        record = codes.verify(session, code_id, code)
        assert record.status == CodeStatus.VERIFIED.value
        assert record.verified_at is not None
        assert session.get(AccessToken, token.id_hash).status == TokenStatus.USED.value

    def test_verified_code_cannot_be_reused(self, pending_code, codes, session: Session) -> None:
        code, code_id, _ = pending_code
        codes.verify(session, code_id, code)
        with pytest.raises(AlreadyUsedError):
            codes.verify(session, code_id, code)

    def test_wrong_code_counts_down(self, pending_code, codes, session: Session) -> None:
        code, code_id, _ = pending_code
        for expected_remaining in (4, 3, 2, 1):
            with pytest.raises(WrongCodeError) as exc_info:
                codes.verify(session, code_id, _wrong(code))
            assert exc_info.value.remaining_attempts == expected_remaining
        assert session.get(VerificationCode, code_id).attempts == 4

    def test_sixth_attempt_blocked_even_when_correct(self, pending_code, codes, session: Session) -> None:
        code, code_id, _ = pending_code
        for _ in range(4):
            with pytest.raises(WrongCodeError):
                codes.verify(session, code_id, _wrong(code))
        with pytest.raises(WrongCodeError) as exc_info:
            codes.verify(session, code_id, _wrong(code))
        assert exc_info.value.remaining_attempts == 0
        assert session.get(VerificationCode, code_id).status == CodeStatus.BLOCKED.value

        with pytest.raises(BlockedError):
            codes.verify(session, code_id, code)
        assert session.get(VerificationCode, code_id).attempts == 5

    def test_expired_code_not_evaluated(self, pending_code, codes, session: Session, clock) -> None:
        code, code_id, _ = pending_code
        clock.advance(minutes=11)
        with pytest.raises(ExpiredError):
            codes.verify(session, code_id, code)
        row = session.get(VerificationCode, code_id)
        assert row.status == CodeStatus.EXPIRED.value
        assert row.attempts == 0
        assert row.last_attempt_at is None

    def test_unknown_code(self, codes, session: Session) -> None:
        with pytest.raises(NotFoundError):
            codes.verify(session, "missing", "123456")

    def test_parallel_guesses_never_exceed_limit(self, file_engine, notifier) -> None:
        tokens = TokenStore()
        codes = VerificationCodeStore(notifier, tokens)
        with Session(file_engine) as setup:
            secret, _ = tokens.issue(setup, "patient-001", "message-1")
            setup.commit()
            token = tokens.redeem(setup, secret)
            code, code_id = codes.issue(setup, token, "provider@practice.example")

        barrier = threading.Barrier(10)
        wrong = _wrong(code)

        def guess() -> None:
            with Session(file_engine) as db:
                barrier.wait()
                try:
                    codes.verify(db, code_id, wrong)
                except (WrongCodeError, BlockedError):
                    pass

        threads = [threading.Thread(target=guess) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        with Session(file_engine) as db:
            row = db.get(VerificationCode, code_id)
            assert row.attempts == 5
            assert row.status == CodeStatus.BLOCKED.value
