# src/kvcore/exceptions.py
"""
Custom exceptions for the kvcore library.

This module defines a hierarchy of custom exception classes so applications
can tell configuration mistakes, schema bootstrap failures, closed stores and
migration failures apart from ordinary driver errors.
"""

class KVCoreError(Exception):
    """Base class for all kvcore specific errors."""
    def __init__(self, message: str = "An unspecified error occurred in kvcore."):
        super().__init__(message)

class ConfigError(KVCoreError):
    """Raised for errors related to store configuration or option validation."""
    def __init__(self, message: str = "Configuration error."):
        super().__init__(message)

class StorageError(KVCoreError):
    """Base class for errors related to storage operations."""
    def __init__(self, message: str = "Storage error."):
        super().__init__(message)

class ConnectionPoolError(StorageError):
    """Raised when a pooled connection cannot be opened or closed."""
    def __init__(self, dialect: str = "unknown", message: str = "Connection pool error."):
        self.dialect = dialect
        super().__init__(f"[{dialect}] {message}")

class BootstrapError(StorageError):
    """
    Raised when the schema bootstrap of a store failed.

    The store instance stays unusable afterwards; a new instance has to be
    constructed once the underlying problem is fixed.
    """
    def __init__(self, dialect: str = "unknown", message: str = "Schema bootstrap failed."):
        self.dialect = dialect
        super().__init__(f"[{dialect}] {message}")

class StoreClosedError(StorageError):
    """Raised when an operation is issued on a store after disconnect()."""
    def __init__(self, dialect: str = "unknown", message: str = "Store has been disconnected."):
        self.dialect = dialect
        super().__init__(f"[{dialect}] {message}")

class MigrationError(StorageError):
    """Raised when the namespace migration fails; all data changes are rolled back."""
    def __init__(self, table: str = "unknown", message: str = "Migration failed."):
        self.table = table
        super().__init__(f"{message} Table: '{table}'")
