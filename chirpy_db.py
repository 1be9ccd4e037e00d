"""
chirpy_db.py — Chirp and user records on top of the document store.

Every write holds the exclusive side of a reader/writer lock across the whole
load -> mutate -> store sequence, so a writer always works on a fresh
snapshot and check-then-act steps (e.g. the duplicate-email check followed by
the insert) are atomic with respect to other writers.  Reads hold the shared
side across the load only.

IDs come from one in-memory counter per collection, seeded once from the
highest id on disk and advanced only after a successful store.  They are
never reused.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional

from chirpy_crypto import CredentialManager
from chirpy_errors import AuthFault, DuplicateEmail, NotFound, ValidationFault
from chirpy_store import COLLECTIONS, DocumentStore

log = logging.getLogger("chirpy.db")

MAX_CHIRP_LENGTH = 140


class ReadWriteLock:
    """
    Many readers or one writer.  A waiting writer blocks new readers so a
    steady stream of reads cannot starve writes.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


def _public_user(rec: Dict) -> Dict:
    """User record as handed to callers: the credential never leaves."""
    return {"id": rec["id"], "email": rec["email"]}


def _check_user_fields(email, password) -> None:
    if not isinstance(email, str) or not email:
        raise ValidationFault("Email is required")
    if not isinstance(password, str) or not password:
        raise ValidationFault("Password is required")


class ChirpyDB:
    """
    Record repository for chirps and users.

    Usage:
        db = ChirpyDB(DocumentStore("database.json"), CredentialManager())
        chirp = db.create_chirp("hello")
        user  = db.create_user("a@x.com", "pw")
    """

    def __init__(self, store: DocumentStore, credentials: CredentialManager) -> None:
        self.store = store
        self.credentials = credentials
        self._lock = ReadWriteLock()

        with self._lock.write_locked():
            self.store.ensure_exists()
            doc = self.store.load()
            # name -> last id handed out
            self._last_ids = {name: max(doc[name], default=0) for name in COLLECTIONS}
        log.info("Database ready: %d chirps, %d users (next ids %d/%d)",
                 len(doc["chirps"]), len(doc["users"]),
                 self._last_ids["chirps"] + 1, self._last_ids["users"] + 1)

    # ── Internal ──────────────────────────────────────────────────────────────

    def _insert(self, doc: Dict, collection: str, record: Dict) -> Dict:
        """Assign the next id, store the document, then advance the counter."""
        new_id = self._last_ids[collection] + 1
        record = dict(record, id=new_id)
        doc[collection][new_id] = record
        self.store.store(doc)
        self._last_ids[collection] = new_id
        return record

    @staticmethod
    def _find_by_email(doc: Dict, email: str) -> Optional[Dict]:
        for rec in doc["users"].values():
            if rec["email"] == email:
                return rec
        return None

    # ── Chirps ────────────────────────────────────────────────────────────────

    def create_chirp(self, body: str) -> Dict:
        if not isinstance(body, str):
            raise ValidationFault("Chirp body must be a string")
        if len(body) > MAX_CHIRP_LENGTH:
            raise ValidationFault("Chirp is too long")

        with self._lock.write_locked():
            doc = self.store.load()
            chirp = self._insert(doc, "chirps", {"body": body})
        log.debug("Created chirp %d", chirp["id"])
        return dict(chirp)

    def list_chirps(self) -> List[Dict]:
        """All chirps.  Order is not defined; sort by id if it matters."""
        with self._lock.read_locked():
            doc = self.store.load()
        return [dict(rec) for rec in doc["chirps"].values()]

    def get_chirp(self, chirp_id: int) -> Dict:
        with self._lock.read_locked():
            doc = self.store.load()
        chirp = doc["chirps"].get(chirp_id)
        if chirp is None:
            raise NotFound(f"Chirp {chirp_id} not found")
        return dict(chirp)

    # ── Users ─────────────────────────────────────────────────────────────────

    def create_user(self, email: str, password: str) -> Dict:
        _check_user_fields(email, password)
        # Hashing is slow; keep it outside the exclusive section
        credential = self.credentials.hash(password)

        with self._lock.write_locked():
            doc = self.store.load()
            if self._find_by_email(doc, email) is not None:
                raise DuplicateEmail("User already exists")
            user = self._insert(doc, "users", {"email": email, "password": credential})
        log.info("Created user %d", user["id"])
        return _public_user(user)

    def update_user(self, user_id: int, email: str, password: str) -> Dict:
        """Replace both email and password of an existing user."""
        _check_user_fields(email, password)
        credential = self.credentials.hash(password)

        with self._lock.write_locked():
            doc = self.store.load()
            if user_id not in doc["users"]:
                raise NotFound(f"User {user_id} not found")
            owner = self._find_by_email(doc, email)
            if owner is not None and owner["id"] != user_id:
                raise DuplicateEmail("Email already in use")
            user = {"id": user_id, "email": email, "password": credential}
            doc["users"][user_id] = user
            self.store.store(doc)
        log.info("Updated user %d", user_id)
        return _public_user(user)

    def find_user_by_email(self, email: str) -> Optional[Dict]:
        with self._lock.read_locked():
            doc = self.store.load()
        rec = self._find_by_email(doc, email)
        return _public_user(rec) if rec is not None else None

    def authenticate(self, email: str, password: str) -> Dict:
        """Login check: NotFound for an unknown email, AuthFault for a bad password."""
        with self._lock.read_locked():
            doc = self.store.load()
        rec = self._find_by_email(doc, email)
        if rec is None:
            raise NotFound("User not found")
        if not self.credentials.verify(rec["password"], password):
            log.info("Failed login for user %d", rec["id"])
            raise AuthFault("Incorrect email or password")
        return _public_user(rec)
