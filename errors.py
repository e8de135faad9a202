"""
Error taxonomy shared by the store, the cache, the scheduler and the API.

Each error carries the HTTP status the API maps it to.
"""


class SendCashError(Exception):
    status = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class NotFound(SendCashError):
    """Lookup miss (username, address, payment)."""
    status = 404


class ValidationError(SendCashError):
    """Malformed client input."""
    status = 400


class ExternalServiceError(SendCashError):
    """Chain RPC or bot transport failure."""
    status = 500


class PersistenceError(SendCashError):
    """Backing store failure."""
    status = 500
