import pytest

from app import build_engine, make_app
from settings import Settings


@pytest.fixture
def settings():
    return Settings(REQUESTING_BASE_URL="api/", STRICT_RESPONSES=False)


@pytest.fixture
def eng(settings):
    return build_engine(settings)


@pytest.fixture
def client(eng, settings):
    app = make_app(eng, settings)
    app.config["TESTING"] = True
    return app.test_client()


def test_base_url_is_normalized(settings):
    assert settings.REQUESTING_BASE_URL == "/api"


def test_register_and_login_over_http(client):
    res = client.post("/api/PasswordAuthentication/register", json={"username": "alice", "password": "pw"})
    assert res.status_code == 200
    user = res.get_json()["user"]
    res = client.post("/api/PasswordAuthentication/authenticate", json={"username": "alice", "password": "pw"})
    assert res.status_code == 200
    body = res.get_json()
    assert body["user"] == user
    assert "session" in body


def test_path_in_body_cannot_reroute_a_request(client):
    res = client.post("/api/PasswordAuthentication/register",
                      json={"username": "bob", "password": "pw", "path": "/Sessioning/delete"})
    assert "user" in res.get_json()


def test_passthrough_route_bypasses_requesting(client, eng):
    res = client.post("/api/PasswordAuthentication/register", json={"username": "a", "password": "pw"})
    assert res.status_code == 200
    eng.concepts["Dictionary"].addTerm("language", "cat", "gato")
    res = client.post("/api/Dictionary/translateTermFromL1", json={"type": "language", "language1": "cat"})
    assert res.status_code == 200
    assert res.get_json() == {"language2": "gato"}
    assert eng.concepts["Requesting"]._requests == {}


def test_unanswered_request_times_out(client):
    res = client.post("/api/Nothing/here", json={})
    assert res.status_code == 504
    assert "error" in res.get_json()


def test_non_object_body_is_rejected(client):
    res = client.post("/api/Library/create", json=["not", "an", "object"])
    assert res.status_code == 400


def test_strict_audit_failure_is_a_server_error():
    settings = Settings(STRICT_RESPONSES=True)
    eng = build_engine(settings)
    client = make_app(eng, settings).test_client()
    for _ in range(5):
        res = client.post("/api/Nothing/here", json={})
        assert res.status_code == 500
    assert eng.concepts["Requesting"]._requests == {}
    assert eng.concepts["Requesting"]._responses == {}


def test_reserved_field_name_is_a_client_error(client, eng):
    res = client.post("/api/PasswordAuthentication/register", json={"username": "a", "password": "pw", "self": 1})
    assert res.status_code == 400
    assert "error" in res.get_json()
    assert eng.concepts["PasswordAuthentication"]._by_username == {}
