"""
chirpy_errors.py - Fault taxonomy shared by the store, the crypto layer and
the HTTP glue.

Every fault carries the HTTP status the server answers with, so handlers can
map an exception to a response without a lookup table of their own.
"""


class ChirpyError(Exception):
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationFault(ChirpyError):
    """Caller input violates a documented constraint."""
    status_code = 400


class AuthFault(ChirpyError):
    """Bad, expired or missing token, or a wrong password."""
    status_code = 401


class NotFound(ChirpyError):
    status_code = 404


class DuplicateEmail(ChirpyError):
    status_code = 409


class StorageFault(ChirpyError):
    """A filesystem operation on the database file failed."""
    status_code = 500


class CorruptionFault(ChirpyError):
    """The database file exists but is not a well-formed document."""
    status_code = 500


class ConfigurationFault(ChirpyError):
    """Start-up configuration is unusable (empty secret, bad integer...)."""
    status_code = 500
