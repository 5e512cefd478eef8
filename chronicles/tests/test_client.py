import asyncio
from unittest.mock import MagicMock

import httpx
import pytest

from chronicles import auth, client as client_module, config
from chronicles.client import SIGNED_IN, SIGNED_OUT, SessionGateway
from chronicles.main import app


def make_gateway():
    return SessionGateway("http://chronicles.test", transport=httpx.ASGITransport(app=app))


def test_sign_up_sign_in_and_sign_out_notify_listeners():
    gateway = make_gateway()
    events = []
    gateway.on_session_change(lambda event, user: events.append((event, user and user["email"])))

    async def scenario():
        await gateway.sign_up("hero@example.com", "correct-horse")
        await gateway.sign_out()
        await gateway.sign_in("hero@example.com", "correct-horse")
        return gateway.current_user()

    user = asyncio.run(scenario())
    assert user["email"] == "hero@example.com"
    assert events == [
        (SIGNED_IN, "hero@example.com"),
        (SIGNED_OUT, None),
        (SIGNED_IN, "hero@example.com"),
    ]


def test_validation_happens_before_network():
    transport = MagicMock(spec=httpx.AsyncBaseTransport)
    gateway = SessionGateway("http://chronicles.test", transport=transport)
    with pytest.raises(client_module.ValidationFailed):
        asyncio.run(gateway.sign_in("not-an-email", "correct-horse"))
    with pytest.raises(client_module.ValidationFailed):
        asyncio.run(gateway.sign_up("hero@example.com", "short"))
    transport.handle_async_request.assert_not_called()


def test_backend_errors_map_to_friendly_messages():
    gateway = make_gateway()

    async def scenario():
        await gateway.sign_up("hero@example.com", "correct-horse")
        with pytest.raises(client_module.EmailAlreadyRegistered):
            await gateway.sign_up("hero@example.com", "correct-horse")
        with pytest.raises(client_module.InvalidCredentials) as excinfo:
            await gateway.sign_in("hero@example.com", "wrong-horse")
        return excinfo.value.message

    assert asyncio.run(scenario()) == client_module.InvalidCredentials.message


def test_unconfirmed_account(monkeypatch):
    monkeypatch.setattr(config, "REQUIRE_EMAIL_CONFIRMATION", True)
    gateway = make_gateway()

    async def scenario():
        created = await gateway.sign_up("new@example.com", "correct-horse")
        with pytest.raises(client_module.EmailUnconfirmed):
            await gateway.sign_in("new@example.com", "correct-horse")
        return created

    created = asyncio.run(scenario())
    assert created["confirmation_required"] is True
    assert gateway.current_user() is None


def test_server_failure_is_generic():
    def handler(request):
        return httpx.Response(500, json={"detail": "database on fire"})

    gateway = SessionGateway("http://chronicles.test", transport=httpx.MockTransport(handler))
    with pytest.raises(client_module.RequestFailed) as excinfo:
        asyncio.run(gateway.sign_in("hero@example.com", "correct-horse"))
    assert "database" not in excinfo.value.message


def test_refresh_detects_revoked_token():
    gateway = make_gateway()
    events = []
    gateway.on_session_change(lambda event, user: events.append(event))

    async def scenario():
        await gateway.sign_up("hero@example.com", "correct-horse")
        assert (await gateway.refresh())["email"] == "hero@example.com"
        auth.sign_out(auth.find_user_by_email("hero@example.com"))
        return await gateway.refresh()

    assert asyncio.run(scenario()) is None
    assert gateway.current_user() is None
    assert events == [SIGNED_IN, SIGNED_OUT]


def test_unsubscribe_and_close():
    gateway = make_gateway()
    events = []
    unsubscribe = gateway.on_session_change(lambda event, user: events.append(event))
    unsubscribe()
    asyncio.run(gateway.sign_up("hero@example.com", "correct-horse"))
    assert events == []

    gateway.on_session_change(lambda event, user: events.append(event))
    gateway.close()
    asyncio.run(gateway.sign_out())
    assert events == []
    assert gateway.state.closed is True
