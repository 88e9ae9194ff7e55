import json
from datetime import datetime, timedelta, timezone

import pytest

from authlineage.service.codec import InvalidTokenError, TokenCodec

SECRET = "codec-test-secret-that-is-long-enough-0123456789"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(clock):
    return TokenCodec(SECRET, issuer="authlineage", audience="clients", clock=clock)


def _forge(codec: TokenCodec, header: dict, payload: dict, signature: str = "") -> str:
    head = codec._encode_segment(json.dumps(header).encode())
    body = codec._encode_segment(json.dumps(payload).encode())
    return f"{head}.{body}.{signature}"


def test_sign_and_verify_without_expiry(codec, clock):
    token = codec.sign({"sub": "u", "token": "r", "version": 1})
    assert token.count(".") == 2
    assert "=" not in token

    claims = codec.verify(token)
    assert claims["sub"] == "u"
    assert claims["token"] == "r"
    assert claims["version"] == 1
    assert claims["iss"] == "authlineage"
    assert claims["aud"] == "clients"
    assert claims["iat"] == int(clock.now.timestamp())
    assert "exp" not in claims


def test_sign_with_expiry_sets_exp(codec, clock):
    token = codec.sign({"sub": "u"}, expires_in_minutes=10)
    claims = codec.verify(token)
    assert claims["exp"] == int((clock.now + timedelta(minutes=10)).timestamp())


def test_expired_token_is_rejected(codec, clock):
    token = codec.sign({"sub": "u"}, expires_in_minutes=5)
    clock.advance(minutes=5)
    with pytest.raises(InvalidTokenError):
        codec.verify(token)


def test_token_without_exp_never_expires_in_codec(codec, clock):
    token = codec.sign({"sub": "u"})
    clock.advance(days=3650)
    assert codec.verify(token)["sub"] == "u"


def test_tampered_payload_is_rejected(codec):
    token = codec.sign({"sub": "u", "version": 1})
    head, _, sig = token.split(".")
    forged_body = codec._encode_segment(
        json.dumps({"sub": "u", "version": 2, "iss": "authlineage", "aud": "clients"}).encode()
    )
    with pytest.raises(InvalidTokenError):
        codec.verify(f"{head}.{forged_body}.{sig}")


def test_other_key_is_rejected(codec, clock):
    other = TokenCodec("x" * 40, issuer="authlineage", audience="clients", clock=clock)
    with pytest.raises(InvalidTokenError):
        codec.verify(other.sign({"sub": "u"}))


def test_alg_none_header_is_rejected(codec):
    token = _forge(
        codec,
        {"alg": "none", "typ": "JWT"},
        {"sub": "u", "iss": "authlineage", "aud": "clients"},
    )
    with pytest.raises(InvalidTokenError):
        codec.verify(token)


@pytest.mark.parametrize(
    "raw",
    ["", "abc", "a.b", "a.b.c.d", "!!!.???.***"],
)
def test_malformed_tokens_are_rejected(codec, raw):
    with pytest.raises(InvalidTokenError):
        codec.verify(raw)


def test_wrong_issuer_or_audience_is_rejected(codec, clock):
    foreign_issuer = TokenCodec(SECRET, issuer="elsewhere", audience="clients", clock=clock)
    foreign_audience = TokenCodec(SECRET, issuer="authlineage", audience="others", clock=clock)
    with pytest.raises(InvalidTokenError):
        codec.verify(foreign_issuer.sign({"sub": "u"}))
    with pytest.raises(InvalidTokenError):
        codec.verify(foreign_audience.sign({"sub": "u"}))


def test_short_secret_is_refused():
    with pytest.raises(ValueError):
        TokenCodec("too-short", issuer="i", audience="a")


@pytest.mark.parametrize("signature", ["ÿÿ", "sigé", "\udcff", "\ud800"])
def test_non_ascii_signature_is_rejected(codec, signature):
    head, body, _ = codec.sign({"sub": "u"}).split(".")
    with pytest.raises(InvalidTokenError):
        codec.verify(f"{head}.{body}.{signature}")


def test_non_ascii_header_is_rejected(codec):
    _, body, sig = codec.sign({"sub": "u"}).split(".")
    with pytest.raises(InvalidTokenError):
        codec.verify(f"ÿÿ.{body}.{sig}")


@pytest.mark.parametrize("body", ["ÿÿ", "\ud800"])
def test_non_ascii_payload_is_rejected(codec, body):
    head, _, sig = codec.sign({"sub": "u"}).split(".")
    with pytest.raises(InvalidTokenError):
        codec.verify(f"{head}.{body}.{sig}")
