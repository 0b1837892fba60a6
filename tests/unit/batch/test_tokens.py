"""Tests for job script tokens."""

import time
from unittest.mock import patch

import pytest

from batch_analysis.batch.tokens import ITEM_INVOKE, MEDIA_ORIGINAL, TokenSigner


class TestTokenSigner:
    def test_round_trip(self, signer):
        token = signer.create("batch_analysis", *MEDIA_ORIGINAL, scope="1234")
        claims = signer.verify(token)

        assert claims is not None
        assert claims.subject == "batch_analysis"
        assert claims.allows(*MEDIA_ORIGINAL, "1234")
        assert not claims.allows(*MEDIA_ORIGINAL, "999")
        assert not claims.allows(*ITEM_INVOKE, "1234")

    def test_wildcard_scope(self, signer):
        claims = signer.verify(signer.create("svc", *ITEM_INVOKE))
        assert claims.allows(*ITEM_INVOKE, "42")

    def test_other_secret_rejected(self, signer):
        token = TokenSigner("other-secret", 3600).create("svc", *ITEM_INVOKE, scope="1")
        assert signer.verify(token) is None

    def test_tampered_payload_rejected(self, signer):
        token = signer.create("svc", *ITEM_INVOKE, scope="1")
        forged = signer.create("svc", *ITEM_INVOKE, scope="2").split(".")[0]
        assert signer.verify(f"{forged}.{token.split('.')[1]}") is None

    def test_expired_rejected(self, signer):
        token = signer.create("svc", *ITEM_INVOKE, scope="1", expiry_seconds=60)
        with patch("batch_analysis.batch.tokens.time.time", return_value=time.time() + 120):
            assert signer.verify(token) is None

    @pytest.mark.parametrize("token", ["", "no-dot", "!!!.???", "a.b"])
    def test_malformed_rejected(self, signer, token):
        assert signer.verify(token) is None

    def test_colon_in_field_rejected(self, signer):
        with pytest.raises(ValueError):
            signer.create("svc", *ITEM_INVOKE, scope="a:b")

    def test_from_settings_without_secret(self, settings):
        settings.auth_token_secret = None
        signer = TokenSigner.from_settings(settings)
        assert signer.verify(signer.create("svc", *ITEM_INVOKE)) is not None
