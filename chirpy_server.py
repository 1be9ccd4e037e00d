#!/usr/bin/env python3
"""
chirpy_server.py — Chirpy HTTP API.

Thin glue over the core: each handler decodes the request, calls exactly one
database / token operation and maps the result (or the raised fault) to a
status code.  One thread per request (ThreadingHTTPServer); all locking lives
in chirpy_db.ChirpyDB.

Routes:
    GET  /api/healthz             readiness probe
    GET  /admin/metrics           HTML page with the /app/ hit count
    GET  /api/reset               zero the hit count (POST accepted too)
    POST /api/chirps              {body}                     -> 201 chirp
    GET  /api/chirps                                         -> 200 [chirp]
    GET  /api/chirps/{id}                                    -> 200 chirp
    POST /api/users               {email, password}          -> 201 user
    POST /api/login               {email, password, expires_in_seconds?}
                                                             -> 200 user + token
    PUT  /api/users               {email, password} + Bearer -> 200 user
    GET  /app/...                 static files from the root directory

Start with:
    export JWT_SECRET='a-long-random-secret'
    python3 chirpy_server.py [--port 8080] [--db database.json] [--debug]
"""

import os
import re
import sys
import json
import logging
import argparse
import mimetypes
import threading
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from typing import Dict, Optional
from urllib.parse import urlparse, unquote

from chirpy_crypto import (
    CredentialManager, TokenService, bearer_token,
    DEFAULT_HASH_ITERATIONS, MAX_TOKEN_LIFETIME,
)
from chirpy_errors import ChirpyError, ConfigurationFault, NotFound, ValidationFault
from chirpy_db import ChirpyDB, MAX_CHIRP_LENGTH
from chirpy_store import DocumentStore

# ============================================================
#  CONFIGURATION
# ============================================================

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_DB_PATH = "database.json"
DEFAULT_ROOT = "."
MAX_BODY_SIZE = 1_048_576  # 1 MB

LOG_FORMAT = "%(asctime)s [CHIRPY] %(levelname)s %(message)s"

PROFANITIES = ("kerfuffle", "sharbert", "fornax")
CENSORED = "****"

METRICS_TEMPLATE = """<html>
<body>
    <h1>Welcome, Chirpy Admin</h1>
    <p>Chirpy has been visited {hits} times!</p>
</body>
</html>
"""

log = logging.getLogger("chirpy.server")


class ServerConfig:
    def __init__(self, host: str, port: int, db_path: str, root: str,
                 jwt_secret: str, token_max_lifetime: int,
                 hash_iterations: int, log_level: str, debug: bool):
        self.host = host
        self.port = port
        self.db_path = db_path
        self.root = root
        self.jwt_secret = jwt_secret
        self.token_max_lifetime = token_max_lifetime
        self.hash_iterations = hash_iterations
        self.log_level = log_level
        self.debug = debug


def _env_int(environ, name: str, default: int) -> int:
    raw = environ.get(name, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationFault(f"{name} must be an integer, got {raw!r}")


def load_config(argv=None, environ=None) -> ServerConfig:
    """Environment variables first, command-line flags override them."""
    environ = os.environ if environ is None else environ

    ap = argparse.ArgumentParser(description="Chirpy HTTP API server")
    ap.add_argument("--host", default=environ.get("CHIRPY_HOST", DEFAULT_HOST))
    ap.add_argument("--port", type=int, default=None)
    ap.add_argument("--db", default=environ.get("CHIRPY_DB_PATH", DEFAULT_DB_PATH))
    ap.add_argument("--root", default=environ.get("CHIRPY_ROOT", DEFAULT_ROOT),
                    help="directory served under /app/")
    ap.add_argument("--debug", action="store_true",
                    help="delete the database file before starting")
    args = ap.parse_args(argv)

    port = args.port if args.port is not None else _env_int(environ, "CHIRPY_PORT", DEFAULT_PORT)
    return ServerConfig(
        host=args.host,
        port=port,
        db_path=args.db,
        root=args.root,
        jwt_secret=environ.get("JWT_SECRET", ""),
        token_max_lifetime=_env_int(environ, "CHIRPY_TOKEN_MAX_LIFETIME", MAX_TOKEN_LIFETIME),
        hash_iterations=_env_int(environ, "CHIRPY_HASH_ITERATIONS", DEFAULT_HASH_ITERATIONS),
        log_level=environ.get("CHIRPY_LOG_LEVEL", "INFO"),
        debug=args.debug,
    )


def _log_level(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO

# ============================================================
#  PROFANITY FILTER
# ============================================================

def clean_body(body: str) -> str:
    """Replace profane words (case-insensitive, whole words) with ****."""
    words = body.split(" ")
    return " ".join(CENSORED if w.lower() in PROFANITIES else w for w in words)

# ============================================================
#  METRICS
# ============================================================

class HitCounter:
    def __init__(self):
        self._lock = threading.Lock()
        self._hits = 0

    def increment(self):
        with self._lock:
            self._hits += 1

    def reset(self):
        with self._lock:
            self._hits = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._hits

# ============================================================
#  HTTP SERVER
# ============================================================

_CHIRP_ID_RE = re.compile(r'^/api/chirps/([^/]+)$')


class ChirpyServer:
    """
    Owns the HTTP listener and everything request handlers need.

    Usage:
        server = ChirpyServer(db, tokens, root=".", port=8080)
        server.serve_forever()          # blocking
        # or
        url = server.start()            # background thread (tests)
        server.stop()
    """

    def __init__(self, db: ChirpyDB, tokens: TokenService, root: str = DEFAULT_ROOT,
                 host: str = DEFAULT_HOST, port: int = DEFAULT_PORT):
        self.db = db
        self.tokens = tokens
        self.root = os.path.realpath(root)
        self.hits = HitCounter()
        self.httpd = ThreadingHTTPServer((host, port), self._create_handler())
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self.httpd.server_address[1]

    def serve_forever(self):
        log.info("Serving files from %s on port %d", self.root, self.port)
        self.httpd.serve_forever()

    def start(self) -> str:
        """Serve from a daemon thread and return the base URL."""
        self._thread = threading.Thread(target=self.serve_forever, daemon=True,
                                        name="ChirpyHTTP")
        self._thread.start()
        return f"http://127.0.0.1:{self.port}"

    def stop(self):
        self.httpd.shutdown()
        self.httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    # ── Route handlers ────────────────────────────────────────────────────────
    # Each returns (status, payload); faults propagate to the dispatcher.

    def handle_create_chirp(self, request: Dict):
        body = request.get("body")
        if not isinstance(body, str):
            raise ValidationFault("Chirp body must be a string")
        # The limit applies to what the user wrote, not the censored text
        if len(body) > MAX_CHIRP_LENGTH:
            raise ValidationFault("Chirp is too long")
        chirp = self.db.create_chirp(clean_body(body))
        log.debug("Clean chirp: %s", chirp["body"])
        return 201, chirp

    def handle_list_chirps(self):
        return 200, sorted(self.db.list_chirps(), key=lambda c: c["id"])

    def handle_get_chirp(self, raw_id: str):
        try:
            chirp_id = int(raw_id)
        except ValueError:
            raise ValidationFault(f"Invalid id {raw_id}")
        return 200, self.db.get_chirp(chirp_id)

    def handle_create_user(self, request: Dict):
        user = self.db.create_user(request.get("email"), request.get("password"))
        return 201, user

    def handle_login(self, request: Dict):
        expires_in = request.get("expires_in_seconds", 0)
        if expires_in is None:
            expires_in = 0
        if isinstance(expires_in, bool) or not isinstance(expires_in, int):
            raise ValidationFault("expires_in_seconds must be an integer")
        email, password = request.get("email"), request.get("password")
        if not isinstance(email, str) or not isinstance(password, str):
            raise ValidationFault("Email and password are required")
        user = self.db.authenticate(email, password)
        token = self.tokens.issue(user["id"], expires_in)
        return 200, dict(user, token=token)

    def handle_update_user(self, request: Dict, headers):
        user_id = self.tokens.verify(bearer_token(headers.get("Authorization")))
        user = self.db.update_user(user_id, request.get("email"), request.get("password"))
        return 200, user

    # ── Handler factory ───────────────────────────────────────────────────────

    def _create_handler(self):
        app = self

        class RequestHandler(BaseHTTPRequestHandler):
            server_version = "Chirpy/1.0"

            def log_message(self, format, *args):
                log.debug("[REQUEST] %s %s", self.address_string(), format % args)

            def do_GET(self):
                self._dispatch("GET")

            def do_POST(self):
                self._dispatch("POST")

            def do_PUT(self):
                self._dispatch("PUT")

            def _dispatch(self, method: str):
                path = urlparse(self.path).path
                try:
                    # The body is always consumed before any answer is sent
                    self._body = self._read_body()
                    if path == "/app" or path.startswith("/app/"):
                        app.hits.increment()
                        self._serve_static(path[len("/app"):])
                        return
                    if len(path) > 1:
                        path = path.rstrip("/")
                    self._route(method, path)
                except ChirpyError as exc:
                    if exc.status_code >= 500:
                        log.error("%s %s failed: %s", method, path, exc.message)
                        self._send_json(exc.status_code, {"error": "Something went wrong"})
                    else:
                        self._send_json(exc.status_code, {"error": exc.message})
                except Exception as exc:
                    log.exception("Unhandled error for %s %s: %s", method, path, exc)
                    self._send_json(500, {"error": "Something went wrong"})

            def _route(self, method: str, path: str):
                if path == "/api/healthz" and method == "GET":
                    self._send_text(200, "OK", "text/plain; charset=utf-8")
                elif path == "/admin/metrics" and method == "GET":
                    self._send_text(200, METRICS_TEMPLATE.format(hits=app.hits.value),
                                    "text/html; charset=utf-8")
                elif path == "/api/reset" and method in ("GET", "POST"):
                    app.hits.reset()
                    self._send_text(200, "OK", "text/plain; charset=utf-8")
                elif path == "/api/chirps" and method == "POST":
                    self._send_json(*app.handle_create_chirp(self._read_json()))
                elif path == "/api/chirps" and method == "GET":
                    self._send_json(*app.handle_list_chirps())
                elif _CHIRP_ID_RE.match(path) and method == "GET":
                    self._send_json(*app.handle_get_chirp(_CHIRP_ID_RE.match(path).group(1)))
                elif path == "/api/users" and method == "POST":
                    self._send_json(*app.handle_create_user(self._read_json()))
                elif path == "/api/users" and method == "PUT":
                    self._send_json(*app.handle_update_user(self._read_json(), self.headers))
                elif path == "/api/login" and method == "POST":
                    self._send_json(*app.handle_login(self._read_json()))
                elif path in ("/api/healthz", "/admin/metrics", "/api/reset",
                              "/api/chirps", "/api/users", "/api/login") or _CHIRP_ID_RE.match(path):
                    self._send_json(405, {"error": "Method not allowed"})
                else:
                    raise NotFound("Endpoint not found")

            def _read_body(self) -> bytes:
                try:
                    length = int(self.headers.get("Content-Length") or 0)
                except ValueError:
                    raise ValidationFault("Invalid Content-Length")
                if length < 0 or length > MAX_BODY_SIZE:
                    raise ValidationFault("Request body too large")
                return self.rfile.read(length) if length else b""

            def _read_json(self) -> Dict:
                try:
                    data = json.loads(self._body.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError):
                    raise ValidationFault("Request body must be valid JSON")
                if not isinstance(data, dict):
                    raise ValidationFault("Request body must be a JSON object")
                return data

            def _serve_static(self, rel_path: str):
                rel_path = unquote(rel_path).lstrip("/")
                target = os.path.realpath(os.path.join(app.root, rel_path))
                if target != app.root and not target.startswith(app.root + os.sep):
                    raise NotFound("File not found")
                if os.path.isdir(target):
                    target = os.path.join(target, "index.html")
                if not os.path.isfile(target):
                    raise NotFound("File not found")
                try:
                    with open(target, "rb") as f:
                        content = f.read()
                except OSError:
                    raise NotFound("File not found")
                content_type = mimetypes.guess_type(target)[0] or "application/octet-stream"
                self._send_bytes(200, content, content_type)

            def _send_json(self, status: int, payload):
                self._send_bytes(status, json.dumps(payload).encode("utf-8"), "application/json")

            def _send_text(self, status: int, text: str, content_type: str):
                self._send_bytes(status, text.encode("utf-8"), content_type)

            def _send_bytes(self, status: int, data: bytes, content_type: str):
                self.send_response(status)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(data)))
                self.end_headers()
                self.wfile.write(data)

        return RequestHandler

# ============================================================
#  MAIN ENTRY POINT
# ============================================================

def main(argv=None):
    logging.basicConfig(
        level=_log_level(os.environ.get("CHIRPY_LOG_LEVEL", "INFO")),
        format=LOG_FORMAT,
    )

    try:
        config = load_config(argv)
        if not config.jwt_secret:
            raise ConfigurationFault("JWT_SECRET environment variable is not set.")
        tokens = TokenService(config.jwt_secret, max_lifetime=config.token_max_lifetime)
        credentials = CredentialManager(iterations=config.hash_iterations)
    except ConfigurationFault as exc:
        log.critical("FATAL: %s", exc.message)
        log.critical("Set it with:  export JWT_SECRET='a-long-random-secret'")
        sys.exit(1)

    store = DocumentStore(config.db_path)
    try:
        if config.debug:
            store.remove()
        db = ChirpyDB(store, credentials)
    except ChirpyError as exc:
        log.critical("FATAL: unable to open database %s: %s", config.db_path, exc.message)
        sys.exit(1)

    try:
        server = ChirpyServer(db, tokens, root=config.root,
                              host=config.host, port=config.port)
    except OSError as exc:
        log.critical("CRITICAL: Failed to bind %s:%d: %s", config.host, config.port, exc)
        sys.exit(1)

    log.info("Chirpy API started on %s:%d (db=%s)", config.host, server.port, config.db_path)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        log.info("Server shutting down (KeyboardInterrupt)")
    finally:
        server.httpd.server_close()


if __name__ == "__main__":
    main()
