"""Device credential validation."""

from datetime import timedelta

import pytest
from jose import jwt

from services.device_auth import DeviceIdentity, extract_bearer
from services.realtime.exceptions import Unauthenticated


def _sign(settings, **claims):
    return jwt.encode(claims, settings.jwt_secret_key, algorithm="HS256")


class TestVerifyToken:

    def test_valid_token_resolves_device(self, auth, token):
        assert auth.verify_token(token) == DeviceIdentity(device_id="watch-1", user_id="user-1")

    def test_expired_token_rejected(self, auth):
        expired = auth.create_device_token("watch-1", "user-1", expires_in=timedelta(seconds=-5))
        with pytest.raises(Unauthenticated):
            auth.verify_token(expired)

    def test_wrong_signature_rejected(self, auth):
        forged = jwt.encode(
            {"deviceId": "watch-1", "userId": "user-1", "type": "device", "exp": 9999999999},
            "another-secret-that-is-long-enough-000",
            algorithm="HS256",
        )
        with pytest.raises(Unauthenticated):
            auth.verify_token(forged)

    def test_user_token_is_not_a_device_token(self, auth, settings):
        user_token = _sign(settings, deviceId="watch-1", userId="user-1", type="user", exp=9999999999)
        with pytest.raises(Unauthenticated):
            auth.verify_token(user_token)

    def test_token_without_expiry_rejected(self, auth, settings):
        no_exp = _sign(settings, deviceId="watch-1", userId="user-1", type="device")
        with pytest.raises(Unauthenticated):
            auth.verify_token(no_exp)

    def test_missing_device_claim_rejected(self, auth, settings):
        no_device = _sign(settings, userId="user-1", type="device", exp=9999999999)
        with pytest.raises(Unauthenticated):
            auth.verify_token(no_device)

    @pytest.mark.parametrize("value", [None, "", "not-a-jwt"])
    def test_garbage_rejected(self, auth, value):
        with pytest.raises(Unauthenticated):
            auth.verify_token(value)

    def test_failures_share_one_message(self, auth, settings):
        messages = set()
        for bad in ("garbage", _sign(settings, type="user", exp=9999999999)):
            with pytest.raises(Unauthenticated) as exc:
                auth.verify_token(bad)
            messages.add(str(exc.value))
        assert messages == {"Invalid or expired credential"}


class TestExtractBearer:

    def test_header(self):
        assert extract_bearer("Bearer abc", None) == "abc"

    def test_scheme_is_case_insensitive(self):
        assert extract_bearer("bearer abc") == "abc"

    def test_query_param_fallback(self):
        assert extract_bearer(None, "xyz") == "xyz"

    def test_header_wins(self):
        assert extract_bearer("Bearer abc", "xyz") == "abc"

    def test_non_bearer_header_falls_back(self):
        assert extract_bearer("Basic dXNlcjpwYXNz", "xyz") == "xyz"

    def test_nothing(self):
        assert extract_bearer(None, None) is None
