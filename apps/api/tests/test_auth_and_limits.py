import pytest
from fastapi import HTTPException
from jose import jwt

from config import admin_user_ids, settings, validate_security_settings
from main import app
from routers import rate_limit
from services.session_token import create_session_token, decode_session_token


class _Client:
    host = "10.0.0.7"


class _State:
    disable_rate_limits = False


class _App:
    state = _State()


class _Request:
    client = _Client()
    headers = {}
    app = _App()


def test_session_token_round_trip_and_type_check():
    token = create_session_token("42", first_name="Sari")["token"]
    payload = decode_session_token(token)
    assert payload["sub"] == "42"
    assert payload["name"] == "Sari"

    foreign = jwt.encode({"sub": "42", "type": "other"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    with pytest.raises(ValueError):
        decode_session_token(foreign)
    with pytest.raises(ValueError):
        decode_session_token("not-a-token")


def test_admin_ids_merge_owner_and_list(monkeypatch):
    monkeypatch.setattr(settings, "OWNER_ID", "1")
    monkeypatch.setattr(settings, "ADMIN_IDS", " 2, 3 ,,")
    assert admin_user_ids() == {"1", "2", "3"}


def test_security_settings_require_webhook_token_in_paid_mode(monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET", "x" * 32)
    monkeypatch.setattr(settings, "MODE", "paid")
    monkeypatch.setattr(settings, "WEBHOOK_TOKEN", "")
    with pytest.raises(ValueError):
        validate_security_settings()

    monkeypatch.setattr(settings, "MODE", "free")
    validate_security_settings()

    monkeypatch.setattr(settings, "JWT_SECRET", "change_me_in_production")
    with pytest.raises(ValueError):
        validate_security_settings()


@pytest.mark.asyncio
async def test_rate_limit_falls_back_to_local_counters(monkeypatch):
    monkeypatch.setattr(settings, "REDIS_URL", "redis://127.0.0.1:1/0")
    dependency = rate_limit.rate_limit("unit", limit=2, window_seconds=60)

    await dependency(_Request())
    await dependency(_Request())
    with pytest.raises(HTTPException) as exc_info:
        await dependency(_Request())
    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
async def test_rate_limit_respects_app_switch():
    assert app.state.disable_rate_limits is True
    dependency = rate_limit.rate_limit("unit-disabled", limit=0, window_seconds=60)

    class DisabledRequest(_Request):
        app = app

    await dependency(DisabledRequest())


@pytest.mark.asyncio
async def test_rate_limit_counts_each_session_user_separately(monkeypatch):
    monkeypatch.setattr(settings, "REDIS_URL", "redis://127.0.0.1:1/0")
    dependency = rate_limit.rate_limit("per-user", limit=1, window_seconds=60)

    def request_for(user_id):
        request = _Request()
        request.headers = {"authorization": f"Bearer {create_session_token(user_id)['token']}"}
        return request

    # Both users arrive from the same bot backend address.
    await dependency(request_for("41"))
    await dependency(request_for("42"))
    with pytest.raises(HTTPException) as exc_info:
        await dependency(request_for("41"))
    assert exc_info.value.status_code == 429

    forged = _Request()
    forged.headers = {"authorization": "Bearer not-a-token"}
    await dependency(forged)
    with pytest.raises(HTTPException):
        await dependency(forged)
