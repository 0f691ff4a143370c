"""End-to-end login flows against fakeredis and the in-memory user store."""

from unittest.mock import AsyncMock

import pytest

from conftest import CHROME_WINDOWS_UA, SAFARI_IPHONE_UA, TEST_PASSWORD
from sessionguard.service.auth import DEVICE_LOGOUT_MESSAGE, AuthService
from sessionguard.service.errors import (
    AuthenticationError,
    DependencyUnavailableError,
    InactiveAccountError,
    RefreshTokenError,
    TooManyRequestsError,
)
from sessionguard.storage.errors import StoreUnavailableError

IP = "1.2.3.4"


async def _fail(auth_service, password="wrong-password"):
    with pytest.raises((AuthenticationError, TooManyRequestsError)) as exc_info:
        await auth_service.login("a@example.com", password, ip=IP)
    return exc_info.value


async def test_successful_login_issues_backed_tokens(auth_service, test_user):
    result = await auth_service.login(
        "a@example.com", TEST_PASSWORD, user_agent=CHROME_WINDOWS_UA, ip=IP
    )
    session = await auth_service.sessions.get(result.session_id)
    assert session.user_id == test_user.id
    assert await auth_service.sessions.active_session_id(test_user.id) == result.session_id
    token_record = await auth_service.refresh_tokens.get(result.refresh_token)
    assert token_record.session_id == result.session_id

    body = result.to_dict()
    assert body["user"]["email"] == "a@example.com"
    assert body["device_info"] == {
        "device_id": result.device_id,
        "is_new_device": True,
        "total_devices": 1,
    }
    assert "device_logout" not in body

    stored = auth_service.store.get_user(test_user.id)
    assert stored.last_login is not None
    assert stored.last_device_info["browser"].startswith("Chrome")
    assert stored.devices[0].device_id == result.device_id


async def test_fourth_failure_reports_one_attempt_remaining(auth_service, test_user):
    for expected_remaining in (4, 3, 2, 1):
        error = await _fail(auth_service)
        assert isinstance(error, AuthenticationError)
        assert error.attempts_remaining == expected_remaining
    assert "1 attempt remaining" in error.message


async def test_fifth_failure_locks_even_correct_password(auth_service, test_user):
    for _ in range(4):
        await _fail(auth_service)
    fifth = await _fail(auth_service)
    assert isinstance(fifth, TooManyRequestsError)
    assert fifth.retry_after == 900

    sixth = await _fail(auth_service, password=TEST_PASSWORD)
    assert isinstance(sixth, TooManyRequestsError)
    assert 0 < sixth.retry_after <= 900


async def test_success_clears_failure_counter(auth_service, test_user):
    for _ in range(4):
        await _fail(auth_service)
    await auth_service.login("a@example.com", TEST_PASSWORD, ip=IP)
    identifier = auth_service.attempts.identifier("a@example.com", IP)
    assert await auth_service.attempts.attempt_count(identifier) == 0

    error = await _fail(auth_service)
    assert error.attempts_remaining == 4


async def test_unknown_user_is_indistinguishable(auth_service, test_user):
    with pytest.raises(AuthenticationError) as exc_info:
        await auth_service.login("nobody@example.com", "whatever", ip=IP)
    assert exc_info.value.attempts_remaining == 4
    assert exc_info.value.error_code == "unauthorized"


async def test_lockout_is_per_identifier(auth_service, test_user):
    for _ in range(5):
        await _fail(auth_service)
    result = await auth_service.login("a@example.com", TEST_PASSWORD, ip="5.6.7.8")
    assert result.access_token


async def test_inactive_account_does_not_count_failure(auth_service, memory_store, test_user):
    user = memory_store.get_user(test_user.id)
    user.is_active = False
    memory_store.save_user(user)

    with pytest.raises(InactiveAccountError):
        await auth_service.login("a@example.com", TEST_PASSWORD, ip=IP)
    identifier = auth_service.attempts.identifier("a@example.com", IP)
    assert await auth_service.attempts.attempt_count(identifier) == 0


async def test_second_device_evicts_first(auth_service, test_user):
    first = await auth_service.login(
        "a@example.com", TEST_PASSWORD, user_agent=CHROME_WINDOWS_UA, ip=IP
    )
    second = await auth_service.login(
        "a@example.com", TEST_PASSWORD, user_agent=SAFARI_IPHONE_UA, ip="10.0.0.2"
    )

    body = second.to_dict()
    previous = body["device_logout"]["previous_device"]
    assert previous["device_type"] == "desktop"
    assert previous["device_id"] == first.device_id
    assert previous["browser"] == "Chrome"
    assert body["device_logout"]["message"] == DEVICE_LOGOUT_MESSAGE

    assert await auth_service.sessions.get(first.session_id) is None
    assert await auth_service.refresh_tokens.get(first.refresh_token) is None
    pointed = await auth_service.sessions.active_session_id(test_user.id)
    assert pointed == second.session_id

    devices = auth_service.list_devices(test_user.id)
    assert [d["is_active"] for d in devices] == [True, False]
    assert body["device_info"]["total_devices"] == 2


async def test_same_device_relogin_rotates_session(auth_service, test_user):
    first = await auth_service.login(
        "a@example.com", TEST_PASSWORD, user_agent=CHROME_WINDOWS_UA, ip=IP
    )
    second = await auth_service.login(
        "a@example.com", TEST_PASSWORD, user_agent=CHROME_WINDOWS_UA, ip=IP
    )
    assert second.session_id != first.session_id
    assert second.previous_device is None
    assert not second.is_new_device
    assert await auth_service.sessions.get(first.session_id) is None
    stored = auth_service.store.get_user(test_user.id)
    assert stored.devices[0].login_count == 2


async def test_authenticate_and_supersession(auth_service, test_user):
    first = await auth_service.login("a@example.com", TEST_PASSWORD, ip=IP)
    ctx = await auth_service.authenticate(f"Bearer {first.access_token}")
    assert ctx.user_id == test_user.id
    assert ctx.session_id == first.session_id
    assert ctx.email == "a@example.com"

    await auth_service.login(
        "a@example.com", TEST_PASSWORD, user_agent=SAFARI_IPHONE_UA, ip=IP
    )
    # the old access token is still signed correctly but its session is gone
    with pytest.raises(AuthenticationError):
        await auth_service.authenticate(f"Bearer {first.access_token}")


async def test_authenticate_rejects_missing_and_bad_tokens(auth_service):
    with pytest.raises(AuthenticationError):
        await auth_service.authenticate(None)
    with pytest.raises(AuthenticationError):
        await auth_service.authenticate("Bearer garbage")


async def test_refresh_access_token(auth_service, test_user):
    result = await auth_service.login("a@example.com", TEST_PASSWORD, ip=IP)
    refreshed = await auth_service.refresh_access_token(result.refresh_token)
    ctx = await auth_service.authenticate(f"Bearer {refreshed['access_token']}")
    assert ctx.session_id == result.session_id


async def test_refresh_failure_reasons(auth_service, memory_store, test_user):
    with pytest.raises(RefreshTokenError) as exc_info:
        await auth_service.refresh_access_token("not-a-token")
    assert exc_info.value.reason == "expired"

    first = await auth_service.login("a@example.com", TEST_PASSWORD, ip=IP)
    await auth_service.login("a@example.com", TEST_PASSWORD, ip=IP)
    with pytest.raises(RefreshTokenError) as exc_info:
        await auth_service.refresh_access_token(first.refresh_token)
    assert exc_info.value.reason == "revoked"

    current = await auth_service.login("a@example.com", TEST_PASSWORD, ip=IP)
    await auth_service.sessions.delete(current.session_id)
    with pytest.raises(RefreshTokenError) as exc_info:
        await auth_service.refresh_access_token(current.refresh_token)
    assert exc_info.value.reason == "session_gone"
    assert await auth_service.refresh_tokens.get(current.refresh_token) is None

    latest = await auth_service.login("a@example.com", TEST_PASSWORD, ip=IP)
    user = memory_store.get_user(test_user.id)
    user.is_active = False
    memory_store.save_user(user)
    with pytest.raises(RefreshTokenError) as exc_info:
        await auth_service.refresh_access_token(latest.refresh_token)
    assert exc_info.value.reason == "user_inactive"
    assert await auth_service.refresh_tokens.get(latest.refresh_token) is None


async def test_logout_removes_session_and_tokens(auth_service, test_user):
    result = await auth_service.login("a@example.com", TEST_PASSWORD, ip=IP)
    await auth_service.logout(result.session_id, test_user.id)
    assert await auth_service.sessions.get(result.session_id) is None
    assert await auth_service.sessions.active_session_id(test_user.id) is None
    assert await auth_service.refresh_tokens.get(result.refresh_token) is None


async def test_session_time_left_and_extend(auth_service, test_user, kv):
    result = await auth_service.login("a@example.com", TEST_PASSWORD, ip=IP)
    assert 0 < await auth_service.session_time_left(result.session_id) <= 300
    await kv.expire(f"session:{result.session_id}", 10)
    assert await auth_service.extend_session(result.session_id)
    assert await auth_service.session_time_left(result.session_id) > 10


async def test_deactivate_device_twice(auth_service, test_user):
    result = await auth_service.login(
        "a@example.com", TEST_PASSWORD, user_agent=CHROME_WINDOWS_UA, ip=IP
    )
    assert auth_service.deactivate_device(test_user.id, result.device_id) is True
    before = auth_service.list_devices(test_user.id)
    assert auth_service.deactivate_device(test_user.id, result.device_id) is False
    assert auth_service.list_devices(test_user.id) == before


async def test_unreachable_store_blocks_token_issuance(
    memory_store, down_kv, settings, password_hasher, test_user
):
    service = AuthService(memory_store, down_kv, settings, password_hasher=password_hasher)
    identifier = service.attempts.identifier("a@example.com", IP)
    assert await service.attempts.is_locked(identifier) is False
    assert await service.attempts.attempt_count(identifier) == 0

    with pytest.raises(DependencyUnavailableError) as exc_info:
        await service.login("a@example.com", TEST_PASSWORD, ip=IP)
    assert exc_info.value.status_code == 503
    # the durable user is untouched when issuance fails
    assert memory_store.get_user(test_user.id).last_login is None

    with pytest.raises(DependencyUnavailableError):
        await service.require_store()


async def test_refresh_token_write_failure_rolls_back_session(auth_service, memory_store, test_user):
    auth_service.refresh_tokens.store = AsyncMock(
        side_effect=StoreUnavailableError("pipeline")
    )
    with pytest.raises(DependencyUnavailableError):
        await auth_service.login(
            "a@example.com", TEST_PASSWORD, user_agent=CHROME_WINDOWS_UA, ip=IP
        )

    auth_service.refresh_tokens.store.assert_awaited_once()
    assert await auth_service.sessions.get_active(test_user.id) is None
    assert await auth_service.sessions.active_session_id(test_user.id) is None
    assert memory_store.get_user(test_user.id).last_login is None


async def test_require_store_passes_when_reachable(auth_service):
    await auth_service.require_store()
    assert auth_service.kv.is_ready()
