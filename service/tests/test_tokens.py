import pytest

from drival.tokens import TokenService


def test_issue_then_verify_returns_same_claims(tokens, clock):
    token, issued = tokens.issue("user-1", "session-1", 600, "10.0.0.1")

    verified = tokens.verify(token)

    assert verified is not None
    assert verified.user_id == "user-1"
    assert verified.session_id == "session-1"
    assert verified.quota_remaining_seconds == 600
    assert verified.ip_address == "10.0.0.1"
    assert verified.expires_at == verified.issued_at + 600 * 1000
    assert verified == issued


def test_issue_rejects_non_positive_quota(tokens):
    with pytest.raises(ValueError):
        tokens.issue("user-1", "session-1", 0)


def test_expired_token_rejected_even_if_library_accepts_it(tokens, clock):
    """The JWT library checks exp against the real clock; our own expiry field must still win."""
    token, _ = tokens.issue("user-1", "session-1", 60)

    clock.advance(61)

    assert tokens.verify(token) is None
    # Signature is still good, which is what lets the service close the session out.
    expired = tokens.verify_ignoring_expiry(token)
    assert expired is not None
    assert tokens.is_expired(expired)


def test_remaining_seconds_counts_down(tokens, clock):
    _, session_token = tokens.issue("user-1", "session-1", 120)

    clock.advance(30.5)

    assert tokens.remaining_seconds(session_token) == 89
    assert not tokens.is_expired(session_token)

    clock.advance(100)
    assert tokens.remaining_seconds(session_token) == 0
    assert tokens.is_expired(session_token)


def test_tampered_and_foreign_tokens_are_rejected(tokens, clock):
    token, _ = tokens.issue("user-1", "session-1", 600)
    header, payload, signature = token.split(".")
    flipped = "A" if signature[0] != "A" else "B"

    assert tokens.verify(f"{header}.{payload}.{flipped}{signature[1:]}") is None
    assert tokens.verify("not-a-token") is None
    assert tokens.verify("") is None

    other = TokenService(secret="someone-else", issuer="aiVoiceAgent", clock=clock)
    assert other.verify(token) is None

    wrong_issuer = TokenService(secret="test-secret-for-signing", issuer="elsewhere", clock=clock)
    assert wrong_issuer.verify(token) is None


def test_heartbeat_and_session_tokens_are_not_interchangeable(tokens):
    token, session_token = tokens.issue("user-1", "session-1", 600)
    heartbeat_token = tokens.issue_heartbeat_token(session_token.session_id, session_token.user_id)

    claims = tokens.verify_heartbeat_token(heartbeat_token)
    assert claims is not None
    assert claims.session_id == "session-1"
    assert claims.user_id == "user-1"

    assert tokens.verify(heartbeat_token) is None
    assert tokens.verify_heartbeat_token(token) is None


def test_heartbeat_token_is_short_lived(tokens, clock):
    _, session_token = tokens.issue("user-1", "session-1", 3600)
    heartbeat_token = tokens.issue_heartbeat_token(session_token.session_id, session_token.user_id)

    clock.advance(301)

    assert tokens.verify_heartbeat_token(heartbeat_token) is None


def test_refresh_mints_a_new_token(tokens, clock):
    token, session_token = tokens.issue("user-1", "session-1", 60)
    clock.advance(30)

    new_token, refreshed = tokens.refresh(session_token, 120)

    assert new_token != token
    assert refreshed.session_id == session_token.session_id
    assert refreshed.nonce != session_token.nonce
    assert refreshed.expires_at == clock() + 120 * 1000
    # The original token is untouched.
    assert tokens.verify(token).expires_at == session_token.expires_at


def test_format_check_and_unverified_peek(tokens):
    token, _ = tokens.issue("user-42", "session-1", 600)

    assert tokens.is_valid_format(token)
    assert not tokens.is_valid_format("a.b")
    assert not tokens.is_valid_format(None)
    assert not tokens.is_valid_format("a.b!.c")
    assert tokens.peek_user_id(token) == "user-42"
    assert tokens.peek_user_id("garbage") is None
