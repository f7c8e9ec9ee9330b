"""
Tests for nonce / PKCE generation and the signed cookie payloads.
"""

import time
from urllib.parse import parse_qs, urlsplit

from connectors.state import (
    StateStore,
    code_challenge_for,
    constant_time_equals,
    nonce_cookie,
    pending_connect_cookie,
    verifier_cookie,
)


class TestNonceAndPkce:
    def test_nonce_is_256_bit_urlsafe(self):
        nonce = StateStore.issue()
        assert len(nonce) == 43
        assert all(c.isalnum() or c in "-_" for c in nonce)

    def test_nonces_are_unique(self):
        assert len({StateStore.issue() for _ in range(100)}) == 100

    def test_challenge_matches_rfc7636_example(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert code_challenge_for(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_pkce_pair(self):
        verifier, challenge = StateStore.create_pkce_pair()
        assert 43 <= len(verifier) <= 128
        assert challenge == code_challenge_for(verifier)
        assert "=" not in challenge

    def test_nonce_round_trips_through_auth_url(self, registry):
        nonce = StateStore.issue()
        _, challenge = StateStore.create_pkce_pair()
        url = registry.get("square").get_auth_url(nonce, code_challenge=challenge)
        query = parse_qs(urlsplit(url).query)
        assert query["state"] == [nonce]
        assert query["code_challenge"] == [challenge]
        assert StateStore.validate(query["state"][0], nonce)


class TestSealedValues:
    def test_seal_unseal(self):
        store = StateStore("state-secret")
        assert store.unseal(store.seal("nonce-value")) == "nonce-value"

    def test_other_secret_rejected(self):
        sealed = StateStore("state-secret").seal("nonce-value")
        assert StateStore("another-secret").unseal(sealed) is None

    def test_tampered_payload_rejected(self):
        store = StateStore("state-secret")
        encoded, sig = store.seal("nonce-value").split(".", 1)
        forged = StateStore("state-secret").seal("attacker").split(".", 1)[0]
        assert store.unseal(f"{forged}.{sig}") is None
        assert store.unseal(f"{encoded}.{'0' * len(sig)}") is None

    def test_expired_payload_rejected(self):
        store = StateStore("state-secret", ttl=600)
        sealed = store.seal("nonce-value", issued_at=int(time.time()) - 601)
        assert store.unseal(sealed) is None

    def test_garbage_rejected(self):
        store = StateStore("state-secret")
        for value in (None, "", "no-dot", "!!!.abc", "e30=.deadbeef"):
            assert store.unseal(value) is None


class TestValidation:
    def test_validate(self):
        assert StateStore.validate("abc", "abc")
        assert not StateStore.validate("abc", "abd")
        assert not StateStore.validate(None, "abc")
        assert not StateStore.validate("abc", None)
        assert not StateStore.validate("", "")

    def test_constant_time_equals(self):
        assert constant_time_equals("secret", "secret")
        assert not constant_time_equals("secret", "secret2")
        assert not constant_time_equals(None, "secret")
        assert not constant_time_equals("secret", "")

    def test_cookie_names(self):
        assert nonce_cookie("square") == "square_nonce"
        assert verifier_cookie("etsy") == "etsy_code_verifier"
        assert pending_connect_cookie("shopify") == "pending_shopify_connect"
