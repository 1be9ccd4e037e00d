"""
chirpy_store.py — Whole-file JSON storage for Chirpy.

The entire database (chirps and users) lives in one UTF-8 JSON document.
Every mutation reads the full document, changes it in memory and writes the
full document back; nothing is ever patched in place.

On-disk format:
  { "chirps": { "<id>": {"id": int, "body": str}, ... },
    "users":  { "<id>": {"id": int, "email": str, "password": str}, ... } }

Durability notes:
  • Saves are atomic: a .tmp file is written, fsync'ed and renamed into place
    with os.replace(), so a reader sees either the old or the new document.
  • A failed save removes the .tmp file and leaves the previous document
    untouched.
  • This module is the only one that touches the database file.  Locking is
    the caller's job (see chirpy_db.ChirpyDB).
"""

import os
import json
import logging
from typing import Dict

from chirpy_errors import CorruptionFault, StorageFault

log = logging.getLogger("chirpy.store")

COLLECTIONS = ("chirps", "users")

# Required fields per collection, besides "id"
_RECORD_FIELDS = {
    "chirps": ("body",),
    "users":  ("email", "password"),
}


def empty_document() -> Dict:
    return {name: {} for name in COLLECTIONS}


class DocumentStore:
    """
    Owns the JSON file at `path`.

    Usage:
        store = DocumentStore("database.json")
        store.ensure_exists()
        doc = store.load()
        doc["chirps"][1] = {"id": 1, "body": "hello"}
        store.store(doc)
    """

    def __init__(self, path: str) -> None:
        self.path = str(path)
        self._tmp_path = self.path + ".tmp"

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def ensure_exists(self) -> None:
        """Create the file holding an empty document if it is absent."""
        if os.path.exists(self.path):
            return
        log.info("Creating empty database at %s", self.path)
        self.store(empty_document())

    def load(self) -> Dict:
        """
        Read and decode the whole document.

        A missing or empty file yields an empty document.  Raises
        CorruptionFault when the content is not a well-formed document and
        StorageFault when the file cannot be read.
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            return empty_document()
        except UnicodeDecodeError as exc:
            log.error("Database %s is not UTF-8 text: %s", self.path, exc)
            raise CorruptionFault(f"Database is not UTF-8 text: {exc}") from exc
        except OSError as exc:
            log.error("Unable to read database %s: %s", self.path, exc)
            raise StorageFault(f"Unable to read database: {exc}") from exc

        if not raw.strip():
            return empty_document()

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            log.error("Database %s is not valid JSON: %s", self.path, exc)
            raise CorruptionFault(f"Database is not valid JSON: {exc}") from exc

        return self._decode(data)

    def store(self, doc: Dict) -> None:
        """Serialise the whole document and atomically replace the file."""
        try:
            payload = json.dumps(self._encode(doc), indent=2)
        except (TypeError, ValueError) as exc:
            raise StorageFault(f"Document is not serialisable: {exc}") from exc

        try:
            with open(self._tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(self._tmp_path, self.path)
        except OSError as exc:
            log.error("Unable to write database %s: %s", self.path, exc)
            self._discard_tmp()
            raise StorageFault(f"Unable to write database: {exc}") from exc

    def remove(self) -> None:
        """Delete the database file (used by `--debug` start-ups)."""
        try:
            os.remove(self.path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageFault(f"Unable to remove database: {exc}") from exc
        log.warning("Removed database %s", self.path)

    # ── Internal ──────────────────────────────────────────────────────────────

    def _discard_tmp(self) -> None:
        try:
            os.remove(self._tmp_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.warning("Could not remove %s: %s", self._tmp_path, exc)

    @staticmethod
    def _encode(doc: Dict) -> Dict:
        # JSON object keys are strings; ids go back to int in _decode()
        return {
            name: {str(rid): dict(rec) for rid, rec in (doc.get(name) or {}).items()}
            for name in COLLECTIONS
        }

    @staticmethod
    def _decode(data) -> Dict:
        if not isinstance(data, dict):
            raise CorruptionFault("Database top level must be a JSON object")

        doc = empty_document()
        for name in COLLECTIONS:
            records = data.get(name)
            if records is None:
                continue
            if not isinstance(records, dict):
                raise CorruptionFault(f"'{name}' must be a JSON object")

            for key, rec in records.items():
                try:
                    rid = int(key)
                except ValueError:
                    raise CorruptionFault(f"'{name}' has a non-integer id {key!r}")
                if rid <= 0:
                    raise CorruptionFault(f"'{name}' has a non-positive id {rid}")
                if not isinstance(rec, dict):
                    raise CorruptionFault(f"'{name}[{key}]' must be a JSON object")
                rec_id = rec.get("id")
                if isinstance(rec_id, bool) or rec_id != rid:
                    raise CorruptionFault(f"'{name}[{key}]' id does not match its key")
                for field in _RECORD_FIELDS[name]:
                    if not isinstance(rec.get(field), str):
                        raise CorruptionFault(f"'{name}[{key}].{field}' must be a string")
                doc[name][rid] = dict(rec, id=rid)
        return doc
