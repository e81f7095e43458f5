from campus_connect.client import storage


def test_auth_round_trip_and_clear():
    storage.store_platform_url("https://project.example")
    storage.store_auth("token-1", {"id": "alice", "email": "alice@example.edu"})
    storage.store_messaging_settings({"read_receipts_enabled": False})

    assert storage.get_token() == "token-1"
    assert storage.get_user()["id"] == "alice"
    assert storage.get_messaging_settings() == {"read_receipts_enabled": False}

    storage.clear_auth()

    assert storage.get_token() is None
    assert storage.get_user() is None
    assert storage.get_messaging_settings() == {}
    assert storage.get_platform_url() == "https://project.example"


def test_missing_state_file_is_empty():
    assert storage.load_state() == {}
