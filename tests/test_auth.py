"""Tests for bearer-token authentication."""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from api.auth import JWT_ALGORITHM, authenticate, get_bearer_token, make_jwt, validate_jwt
from api.errors import UnauthorizedError
from tests.conftest import TEST_JWT_SECRET


class TestGetBearerToken:
    def test_extracts_token(self):
        assert get_bearer_token({"authorization": "Bearer abc.def.ghi"}) == "abc.def.ghi"

    def test_scheme_is_case_insensitive(self):
        assert get_bearer_token({"authorization": "bearer abc"}) == "abc"

    def test_missing_header(self):
        with pytest.raises(UnauthorizedError) as exc_info:
            get_bearer_token({})
        assert exc_info.value.status_code == 401

    @pytest.mark.parametrize("value", ["Basic dXNlcjpwYXNz", "Bearer", "Bearer   ", "abc"])
    def test_malformed_header(self, value):
        with pytest.raises(UnauthorizedError):
            get_bearer_token({"authorization": value})


class TestValidateJWT:
    def test_round_trip(self):
        user_id = str(uuid.uuid4())
        token = make_jwt(user_id, TEST_JWT_SECRET)
        assert validate_jwt(token, TEST_JWT_SECRET) == user_id

    def test_claims(self):
        user_id = str(uuid.uuid4())
        token = make_jwt(user_id, TEST_JWT_SECRET, expires_in=60)
        claims = jwt.decode(token, TEST_JWT_SECRET, algorithms=[JWT_ALGORITHM], issuer="tubely-access")
        assert claims["sub"] == user_id
        assert claims["exp"] - claims["iat"] == 60

    def test_expired(self):
        token = make_jwt(str(uuid.uuid4()), TEST_JWT_SECRET, expires_in=-10)
        with pytest.raises(UnauthorizedError) as exc_info:
            validate_jwt(token, TEST_JWT_SECRET)
        assert exc_info.value.message == "JWT has expired"

    def test_wrong_secret(self):
        token = make_jwt(str(uuid.uuid4()), "another-secret-that-is-long-enough-1234")
        with pytest.raises(UnauthorizedError):
            validate_jwt(token, TEST_JWT_SECRET)

    def test_wrong_issuer(self):
        token = make_jwt(str(uuid.uuid4()), TEST_JWT_SECRET, issuer="someone-else")
        with pytest.raises(UnauthorizedError):
            validate_jwt(token, TEST_JWT_SECRET)

    def test_non_uuid_subject(self):
        token = make_jwt("not-a-uuid", TEST_JWT_SECRET)
        with pytest.raises(UnauthorizedError):
            validate_jwt(token, TEST_JWT_SECRET)

    def test_missing_expiry(self):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"iss": "tubely-access", "sub": str(uuid.uuid4()), "iat": now},
            TEST_JWT_SECRET,
            algorithm=JWT_ALGORITHM,
        )
        with pytest.raises(UnauthorizedError):
            validate_jwt(token, TEST_JWT_SECRET)

    def test_unsigned_token_rejected(self):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"iss": "tubely-access", "sub": str(uuid.uuid4()), "iat": now, "exp": now + timedelta(hours=1)},
            None,
            algorithm="none",
        )
        with pytest.raises(UnauthorizedError):
            validate_jwt(token, TEST_JWT_SECRET)

    def test_empty_secret_rejects_everything(self):
        token = make_jwt(str(uuid.uuid4()), TEST_JWT_SECRET)
        with pytest.raises(UnauthorizedError):
            validate_jwt(token, "")

    def test_garbage_token(self):
        with pytest.raises(UnauthorizedError):
            validate_jwt("garbage", TEST_JWT_SECRET)


class TestAuthenticate:
    def test_returns_user_id(self):
        user_id = str(uuid.uuid4())
        headers = {"authorization": f"Bearer {make_jwt(user_id, TEST_JWT_SECRET)}"}
        assert authenticate(headers, TEST_JWT_SECRET) == user_id
