import pytest

from chirpy_crypto import CredentialManager, TokenService
from chirpy_db import ChirpyDB
from chirpy_store import DocumentStore

SECRET = "test-secret-that-is-long-enough-for-hs256-keys"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def db_path(tmp_path):
    return str(tmp_path / "database.json")


@pytest.fixture()
def store(db_path):
    return DocumentStore(db_path)


@pytest.fixture()
def credentials():
    # Low cost keeps the suite fast; the default is for production
    return CredentialManager(iterations=1_000)


@pytest.fixture()
def db(store, credentials):
    return ChirpyDB(store, credentials)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def tokens(clock):
    return TokenService(SECRET, clock=clock)
