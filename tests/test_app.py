import pytest
from conftest import ME, START

import campus_connect.client.gui.app as app_module
from campus_connect.client import storage
from campus_connect.client.errors import NotSignedIn
from campus_connect.client.gui.app import ChatController
from campus_connect.shared.schemas import ChangeEvent, Notification, Profile


class FakeClient:
    def __init__(self, base_url, anon_key):
        self.base_url = base_url
        self.signed_out = False

    def sign_in(self, email, password):
        return {"access_token": "token-1", "user": {"id": ME, "email": email}}

    def sign_out(self):
        self.signed_out = True


@pytest.fixture
def controller(monkeypatch, gateway):
    monkeypatch.setattr(app_module, "PlatformClient", FakeClient)
    monkeypatch.setattr(app_module, "Gateway", lambda client: gateway)
    return ChatController("https://project.example", "anon")


def test_sign_in_starts_session(controller, gateway):
    with pytest.raises(NotSignedIn):
        controller.me

    controller.sign_in("alice@example.edu", "secret")

    assert controller.signed_in
    assert controller.me == ME
    assert storage.get_token() == "token-1"
    for name in ("fetch_settings", "fetch_conversations", "fetch_friendships", "fetch_notifications"):
        assert gateway.called(name)


def test_console_session_polls_without_realtime(controller):
    controller.sign_in("alice@example.edu", "secret")

    assert controller.realtime is None
    assert controller.messaging.polling


def test_settings_are_cached_locally(controller):
    controller.sign_in("alice@example.edu", "secret")

    controller.messaging.set_setting("read_receipts_enabled", False)

    assert storage.get_messaging_settings() == {"read_receipts_enabled": False, "typing_indicators_enabled": True}


def test_resume_uses_stored_session(monkeypatch, gateway):
    monkeypatch.setattr(app_module, "PlatformClient", FakeClient)
    monkeypatch.setattr(app_module, "Gateway", lambda client: gateway)
    assert not ChatController("https://project.example", "anon").resume()

    storage.store_auth("token-1", {"id": ME})
    controller = ChatController("https://project.example", "anon")

    assert controller.resume()
    assert controller.signed_in


def test_search_excludes_current_user(controller, gateway):
    gateway.search_profiles = lambda name: [Profile(user_id=ME), Profile(user_id="bob", display_name="Bob")]
    controller.sign_in("alice@example.edu", "secret")

    assert [p.user_id for p in controller.search_profiles("b")] == ["bob"]


def test_changes_reach_notifications(controller):
    controller.sign_in("alice@example.edu", "secret")
    record = Notification(id="n1", user_id=ME, type="like", title="New like", created_at=START).model_dump(mode="json")

    controller.handle_change(ChangeEvent(table="notifications", type="INSERT", record=record))

    assert [n.id for n in controller.store.notifications.value] == ["n1"]


def test_sign_out_clears_session(controller):
    controller.sign_in("alice@example.edu", "secret")
    client = controller.client

    controller.sign_out()

    assert client.signed_out
    assert not controller.signed_in
    assert storage.get_token() is None
    assert storage.get_messaging_settings() == {}
