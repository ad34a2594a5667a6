"""Tests for token verification on REST requests and socket handshakes."""
import pytest
import jwt
from unittest.mock import AsyncMock, MagicMock, patch
from datetime import datetime, timezone, timedelta
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from api.middleware import auth_middleware
from api.middleware.auth_middleware import get_current_user, identity_from_token
from utils.jwt_utils import generate_access_token, decode_access_token


TEST_JWT_SECRET = "test-secret-key-for-unit-tests"
TEST_JWT_ALGO = "HS256"


@pytest.fixture(autouse=True)
def _mock_settings():
    with patch("utils.jwt_utils.settings") as mock:
        mock.JWT_SECRET_KEY = TEST_JWT_SECRET
        mock.JWT_ALGORITHM = TEST_JWT_ALGO
        mock.ACCESS_TOKEN_EXPIRE_MINUTES = 15
        yield mock


@pytest.fixture(autouse=True)
def _empty_user_cache():
    auth_middleware._USER_CACHE.clear()
    yield
    auth_middleware._USER_CACHE.clear()


def _token(**claims):
    payload = {
        "user_id": "user-a",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        "iat": datetime.now(timezone.utc),
        "type": "access",
    }
    payload.update(claims)
    return jwt.encode(payload, TEST_JWT_SECRET, algorithm=TEST_JWT_ALGO)


def _bearer(token):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestAccessTokens:
    def test_generated_token_carries_identity(self):
        payload = decode_access_token(generate_access_token("user-a"))
        assert payload["user_id"] == "user-a"
        assert payload["type"] == "access"
        assert payload["exp"] - payload["iat"] == 15 * 60

    def test_wrong_secret_rejected(self):
        token = jwt.encode({"user_id": "user-a", "type": "access"}, "other", algorithm=TEST_JWT_ALGO)
        assert decode_access_token(token) is None

    def test_expired_token_rejected(self):
        token = _token(exp=datetime.now(timezone.utc) - timedelta(minutes=1))
        assert decode_access_token(token) is None


class TestIdentityFromToken:
    def test_valid_token(self):
        assert identity_from_token(_token(user_id="user-b")) == "user-b"

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    def test_missing_or_malformed(self, token):
        assert identity_from_token(token) is None

    def test_non_access_token(self):
        assert identity_from_token(_token(type="refresh")) is None

    def test_token_without_identity(self):
        assert identity_from_token(_token(user_id=None)) is None


class TestGetCurrentUser:
    @pytest.fixture
    def user_repo(self):
        repo = MagicMock()
        repo.get_by_id = AsyncMock(return_value={"id": "user-a", "name": "Alice"})
        with patch.object(auth_middleware, "get_supabase"), \
                patch.object(auth_middleware, "UserRepository", return_value=repo):
            yield repo

    @pytest.mark.asyncio
    async def test_returns_user_and_caches_it(self, user_repo):
        credentials = _bearer(_token())

        first = await get_current_user(credentials)
        second = await get_current_user(credentials)

        assert first == second == {"id": "user-a", "name": "Alice"}
        user_repo.get_by_id.assert_awaited_once_with("user-a")

    @pytest.mark.asyncio
    async def test_invalid_token_is_401(self, user_repo):
        with pytest.raises(HTTPException) as exc:
            await get_current_user(_bearer("garbage"))
        assert exc.value.status_code == 401
        user_repo.get_by_id.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_user_is_401(self, user_repo):
        user_repo.get_by_id.return_value = None
        with pytest.raises(HTTPException) as exc:
            await get_current_user(_bearer(_token()))
        assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_disabled_user_is_403(self, user_repo):
        user_repo.get_by_id.return_value = {"id": "user-a", "is_active": False}
        with pytest.raises(HTTPException) as exc:
            await get_current_user(_bearer(_token()))
        assert exc.value.status_code == 403
