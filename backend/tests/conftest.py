import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import database.db as db


@pytest.fixture()
def test_db(tmp_path, monkeypatch):
    test_db = tmp_path / "examscan_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def client(test_db):
    with TestClient(main.app) as c:
        yield c


def _login(client, username: str, password: str) -> dict:
    res = client.post("/auth/login", json={"username": username, "password": password})
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def auth_headers(client):
    return _login(client, config.ADMIN_USERNAME, config.ADMIN_PASSWORD)


@pytest.fixture()
def invigilator(client):
    user_id = db.create_user("invig1", "invig-pass", full_name="Jane Invigilator")
    return {"id": user_id, "headers": _login(client, "invig1", "invig-pass")}


@pytest.fixture()
def device_headers():
    return {"X-Device-Secret": config.DEVICE_SECRET}
