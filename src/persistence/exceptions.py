"""
Persistence Exceptions
======================
"""


class PersistenceError(Exception):
    """Raised when a storage operation fails. Wraps the underlying database error."""
    pass
