import json
import urllib.error
import urllib.request

import pytest

from chirpy_errors import ConfigurationFault
from chirpy_server import ChirpyServer, clean_body, load_config


@pytest.fixture()
def static_root(tmp_path):
    root = tmp_path / "site"
    root.mkdir()
    (root / "index.html").write_text("<h1>Welcome to Chirpy</h1>", encoding="utf-8")
    (root / "logo.txt").write_text("chirp", encoding="utf-8")
    return str(root)


@pytest.fixture()
def base_url(db, tokens, static_root):
    server = ChirpyServer(db, tokens, root=static_root, host="127.0.0.1", port=0)
    url = server.start()
    yield url
    server.stop()


def call(base_url, method, path, payload=None, token=None, raw=None):
    data = raw if raw is not None else (json.dumps(payload).encode() if payload is not None else None)
    req = urllib.request.Request(base_url + path, data=data, method=method)
    if data is not None:
        req.add_header("Content-Type", "application/json")
    if token:
        req.add_header("Authorization", f"Bearer {token}")
    try:
        with urllib.request.urlopen(req, timeout=5) as resp:
            return resp.status, resp.read().decode("utf-8"), resp.headers
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8"), exc.headers


def call_json(base_url, method, path, payload=None, token=None, raw=None):
    status, body, _ = call(base_url, method, path, payload, token, raw)
    return status, json.loads(body)


# ── Profanity filter ─────────────────────────────────────────────────────────

def test_clean_body_replaces_profanity():
    assert clean_body("I had a Kerfuffle with fornax today") == "I had a **** with **** today"


def test_clean_body_only_replaces_whole_words():
    assert clean_body("sharbert! is fine") == "sharbert! is fine"


# ── Health and metrics ───────────────────────────────────────────────────────

def test_healthz(base_url):
    status, body, headers = call(base_url, "GET", "/api/healthz")
    assert status == 200
    assert body == "OK"
    assert headers["Content-Type"].startswith("text/plain")


def test_static_files_and_metrics(base_url):
    assert call(base_url, "GET", "/app/")[1] == "<h1>Welcome to Chirpy</h1>"
    assert call(base_url, "GET", "/app/logo.txt")[1] == "chirp"
    assert call(base_url, "GET", "/app/missing.txt")[0] == 404

    status, body, _ = call(base_url, "GET", "/admin/metrics")
    assert status == 200
    assert "visited 3 times" in body

    assert call(base_url, "GET", "/api/reset")[0] == 200
    assert "visited 0 times" in call(base_url, "GET", "/admin/metrics")[1]


def test_static_files_cannot_escape_root(base_url):
    assert call(base_url, "GET", "/app/../database.json")[0] == 404
    assert call(base_url, "GET", "/app/%2e%2e/database.json")[0] == 404


# ── Chirps ───────────────────────────────────────────────────────────────────

def test_create_and_fetch_chirps(base_url):
    status, chirp = call_json(base_url, "POST", "/api/chirps", {"body": "hello fornax"})
    assert status == 201
    assert chirp == {"id": 1, "body": "hello ****"}

    call_json(base_url, "POST", "/api/chirps", {"body": "second"})
    status, chirps = call_json(base_url, "GET", "/api/chirps")
    assert status == 200
    assert [c["id"] for c in chirps] == [1, 2]

    assert call_json(base_url, "GET", "/api/chirps/1") == (200, chirp)


def test_chirp_errors(base_url):
    status, body = call_json(base_url, "POST", "/api/chirps", {"body": "x" * 141})
    assert status == 400
    assert body == {"error": "Chirp is too long"}

    assert call_json(base_url, "POST", "/api/chirps", {"text": "hi"})[0] == 400
    assert call_json(base_url, "POST", "/api/chirps", raw=b"{not json")[0] == 400
    assert call_json(base_url, "POST", "/api/chirps", raw=b"[1, 2]")[0] == 400
    assert call_json(base_url, "GET", "/api/chirps/99")[0] == 404
    assert call_json(base_url, "GET", "/api/chirps/abc")[0] == 400


def test_length_limit_applies_before_profanity_filter(base_url):
    body = "fornax " + "x" * 135
    status, payload = call_json(base_url, "POST", "/api/chirps", {"body": body})
    assert status == 400
    assert payload == {"error": "Chirp is too long"}
    assert call_json(base_url, "GET", "/api/chirps") == (200, [])


def test_unknown_route_and_wrong_method(base_url):
    assert call_json(base_url, "GET", "/api/nothing")[0] == 404
    assert call_json(base_url, "PUT", "/api/chirps", {"body": "x"})[0] == 405


# ── Users and login ──────────────────────────────────────────────────────────

def test_user_lifecycle(base_url):
    status, user = call_json(base_url, "POST", "/api/users", {"email": "a@x.com", "password": "pw"})
    assert status == 201
    assert user == {"id": 1, "email": "a@x.com"}

    status, body = call_json(base_url, "POST", "/api/users", {"email": "a@x.com", "password": "pw"})
    assert status == 409
    assert "error" in body

    status, login = call_json(base_url, "POST", "/api/login",
                              {"email": "a@x.com", "password": "pw", "expires_in_seconds": 60})
    assert status == 200
    assert login["id"] == 1 and login["email"] == "a@x.com"
    assert "password" not in login
    token = login["token"]

    status, updated = call_json(base_url, "PUT", "/api/users",
                                {"email": "b@x.com", "password": "new"}, token=token)
    assert status == 200
    assert updated == {"id": 1, "email": "b@x.com"}

    assert call_json(base_url, "POST", "/api/login", {"email": "b@x.com", "password": "pw"})[0] == 401
    assert call_json(base_url, "POST", "/api/login", {"email": "b@x.com", "password": "new"})[0] == 200
    assert call_json(base_url, "POST", "/api/login", {"email": "a@x.com", "password": "pw"})[0] == 404


def test_password_that_is_not_utf8_is_rejected(base_url):
    raw = b'{"email": "a@x.com", "password": "\\ud800"}'
    status, body = call_json(base_url, "POST", "/api/users", raw=raw)
    assert status == 400
    assert "error" in body
    assert call_json(base_url, "POST", "/api/users", {"email": "a@x.com", "password": "pw"})[0] == 201


def test_update_requires_valid_token(base_url, clock):
    call_json(base_url, "POST", "/api/users", {"email": "a@x.com", "password": "pw"})
    payload = {"email": "b@x.com", "password": "new"}

    assert call_json(base_url, "PUT", "/api/users", payload)[0] == 401
    assert call_json(base_url, "PUT", "/api/users", payload, token="not-a-token")[0] == 401

    _, login = call_json(base_url, "POST", "/api/login",
                         {"email": "a@x.com", "password": "pw", "expires_in_seconds": 60})
    clock.advance(61)
    assert call_json(base_url, "PUT", "/api/users", payload, token=login["token"])[0] == 401


def test_login_validates_expiry_type(base_url):
    call_json(base_url, "POST", "/api/users", {"email": "a@x.com", "password": "pw"})
    status, _ = call_json(base_url, "POST", "/api/login",
                          {"email": "a@x.com", "password": "pw", "expires_in_seconds": "soon"})
    assert status == 400


def test_storage_failure_is_500(base_url, db, monkeypatch):
    from chirpy_errors import StorageFault

    def broken_store(doc):
        raise StorageFault("disk full")

    monkeypatch.setattr(db.store, "store", broken_store)
    status, body = call_json(base_url, "POST", "/api/chirps", {"body": "hi"})
    assert status == 500
    assert body == {"error": "Something went wrong"}


# ── Configuration ────────────────────────────────────────────────────────────

def test_load_config_env_and_flags():
    env = {"JWT_SECRET": "s3cret", "CHIRPY_PORT": "9000", "CHIRPY_DB_PATH": "env.json",
           "CHIRPY_HASH_ITERATIONS": "1000"}
    config = load_config([], environ=env)
    assert config.port == 9000
    assert config.db_path == "env.json"
    assert config.jwt_secret == "s3cret"
    assert config.hash_iterations == 1000
    assert config.token_max_lifetime == 86400
    assert config.debug is False

    config = load_config(["--port", "7000", "--db", "flag.json", "--debug"], environ=env)
    assert config.port == 7000
    assert config.db_path == "flag.json"
    assert config.debug is True


def test_load_config_rejects_bad_integers():
    with pytest.raises(ConfigurationFault):
        load_config([], environ={"CHIRPY_TOKEN_MAX_LIFETIME": "a day"})
