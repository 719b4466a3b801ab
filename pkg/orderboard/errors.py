"""
Error taxonomy for the order board.

Every error carries the HTTP status the server maps it to, so the core
modules never import Flask.
"""


class BoardError(Exception):
    """Base class for order board failures."""
    status = 500


class ValidationError(BoardError):
    """Raised when a required field or file is missing or unusable."""
    status = 400


class NotFound(BoardError):
    """Raised when a task, column or task directory does not exist."""
    status = 404


class StorageError(BoardError):
    """Raised when reading or writing metadata or task files fails."""
    status = 500


class UpstreamError(BoardError):
    """Raised when the search ranking relay fails. Always absorbed by search()."""
    status = 502


class ConfigError(Exception):
    """Raised when configuration is invalid or incomplete."""
    pass
