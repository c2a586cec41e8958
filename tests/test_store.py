import sqlite3

import pytest
from cryptography.fernet import Fernet

from sendto.services.store import CredentialStore


@pytest.fixture
def store(tmp_path):
    return CredentialStore(tmp_path / "creds.db", Fernet(Fernet.generate_key()))


def test_put_and_load(store):
    store.put("a", "device_id", "dev-1")
    store.put("a", "refresh_token", "RT1")
    store.put("b", "device_id", "dev-2")

    record = store.load("a")
    assert (record.device_id, record.refresh_token, record.access_token) == ("dev-1", "RT1", None)
    assert store.get("b", "device_id") == "dev-2"
    assert store.get("b", "refresh_token") is None


def test_tokens_are_encrypted_at_rest(store, tmp_path):
    store.put("a", "refresh_token", "RT-secret")
    with sqlite3.connect(tmp_path / "creds.db") as conn:
        (raw,) = conn.execute(
            "SELECT value FROM account_credentials WHERE auth_id = 'a' AND key = 'refresh_token'"
        ).fetchone()
    assert "RT-secret" not in raw
    assert store.get("a", "refresh_token") == "RT-secret"


def test_values_unreadable_with_another_key(store, tmp_path):
    store.put("a", "device_id", "dev-1")
    store.put("a", "refresh_token", "RT1")
    other = CredentialStore(tmp_path / "creds.db", Fernet(Fernet.generate_key()))

    assert other.get("a", "refresh_token") is None
    assert other.load("a").device_id == "dev-1"


def test_overwrite_and_delete(store):
    store.put("a", "access_token", "t1")
    store.put("a", "access_token", "t2")
    assert store.get("a", "access_token") == "t2"

    store.delete("a", "access_token")
    assert store.get("a", "access_token") is None


def test_delete_all_is_scoped_to_account(store):
    store.put("a", "device_id", "dev-1")
    store.put("b", "device_id", "dev-2")
    store.delete_all("a")

    assert store.load("a").device_id is None
    assert store.load("b").device_id == "dev-2"


def test_unknown_field_rejected(store):
    with pytest.raises(ValueError):
        store.put("a", "password", "x")


def _track_connections(monkeypatch):
    opened = []
    connect = sqlite3.connect

    def tracking(*args, **kwargs):
        conn = connect(*args, **kwargs)
        opened.append(conn)
        return conn

    monkeypatch.setattr(sqlite3, "connect", tracking)
    return opened


def test_every_connection_is_closed(tmp_path, monkeypatch):
    opened = _track_connections(monkeypatch)
    store = CredentialStore(tmp_path / "creds.db", Fernet(Fernet.generate_key()))
    store.put("a", "refresh_token", "RT1")
    store.get("a", "refresh_token")
    store.load("a")
    store.delete("a", "refresh_token")
    store.delete_all("a")

    assert len(opened) >= 6
    for conn in opened:
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")


def test_failed_write_rolls_back_and_closes(store, monkeypatch):
    store.put("a", "device_id", "dev-1")
    opened = _track_connections(monkeypatch)

    with pytest.raises(sqlite3.IntegrityError):
        with store._connect() as conn:
            conn.execute("DELETE FROM account_credentials WHERE auth_id = 'a'")
            conn.execute("INSERT INTO account_credentials (auth_id, key) VALUES ('a', 'device_id')")

    assert store.get("a", "device_id") == "dev-1"
    with pytest.raises(sqlite3.ProgrammingError):
        opened[0].execute("SELECT 1")
