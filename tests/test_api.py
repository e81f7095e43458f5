import pytest
import requests

import campus_connect.client.api as api_module
from campus_connect.client.api import PlatformClient, and_, eq, in_, or_
from campus_connect.client.errors import PlatformError, UploadError


class FakeResponse:
    def __init__(self, status_code=200, body=None, reason="OK"):
        self.status_code = status_code
        self._body = body
        self.reason = reason
        self.content = b"" if body is None else b"x"

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


@pytest.fixture
def client():
    return PlatformClient("https://project.example/", "anon")


def test_filter_helpers():
    assert eq(True) == "eq.true"
    assert eq(None) == "eq.null"
    assert in_(["a", "b"]) == "in.(a,b)"
    assert or_(and_("a.eq.1", "b.eq.2"), "c.eq.3") == "(and(a.eq.1,b.eq.2),c.eq.3)"


def test_select_builds_postgrest_query(monkeypatch, client):
    recorded = []
    monkeypatch.setattr(api_module, "get_token", lambda: "user-token")
    monkeypatch.setattr(
        api_module.requests, "request", lambda method, url, **kw: recorded.append((method, url, kw)) or FakeResponse(body=[{"id": "1"}])
    )

    rows = client.select("messages", filters={"sender_id": "eq.alice"}, order="created_at.desc", limit=1)

    method, url, kwargs = recorded[0]
    assert rows == [{"id": "1"}]
    assert method == "GET"
    assert url == "https://project.example/rest/v1/messages"
    assert kwargs["params"] == {"select": "*", "sender_id": "eq.alice", "order": "created_at.desc", "limit": 1}
    assert kwargs["headers"]["apikey"] == "anon"
    assert kwargs["headers"]["Authorization"] == "Bearer user-token"


def test_upsert_merges_duplicates(monkeypatch, client):
    recorded = []
    monkeypatch.setattr(api_module, "get_token", lambda: None)
    monkeypatch.setattr(
        api_module.requests, "request", lambda method, url, **kw: recorded.append((method, url, kw)) or FakeResponse(body=[])
    )

    client.upsert("conversations", [{"id": "c1", "display_order": 0}])

    method, url, kwargs = recorded[0]
    assert method == "POST"
    assert kwargs["params"] == {"on_conflict": "id"}
    assert "resolution=merge-duplicates" in kwargs["headers"]["Prefer"]
    assert kwargs["headers"]["Authorization"] == "Bearer anon"


def test_error_response_raises_platform_error(monkeypatch, client):
    monkeypatch.setattr(api_module, "get_token", lambda: None)
    monkeypatch.setattr(
        api_module.requests,
        "request",
        lambda method, url, **kw: FakeResponse(409, {"message": "duplicate key", "code": "23505"}, "Conflict"),
    )

    with pytest.raises(PlatformError) as info:
        client.insert("friend_requests", {"sender_id": "a"})

    assert info.value.status == 409
    assert info.value.code == "23505"
    assert "duplicate key" in str(info.value)


def test_network_failure_raises_platform_error(monkeypatch, client):
    def boom(method, url, **kw):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(api_module, "get_token", lambda: None)
    monkeypatch.setattr(api_module.requests, "request", boom)

    with pytest.raises(PlatformError) as info:
        client.rpc("get_or_create_conversation", {"other_user_id": "bob"})

    assert info.value.status is None


def test_upload_failure_is_upload_error(monkeypatch, client):
    monkeypatch.setattr(api_module, "get_token", lambda: None)
    monkeypatch.setattr(
        api_module.requests, "request", lambda method, url, **kw: FakeResponse(413, {"error": "too large"}, "Too Large")
    )

    with pytest.raises(UploadError):
        client.upload("Uploads", "messages/a.png", b"data", "image/png")

    assert client.public_url("Uploads", "messages/a.png") == (
        "https://project.example/storage/v1/object/public/Uploads/messages/a.png"
    )
