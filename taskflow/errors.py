"""
Exception types shared by the engine, its ports and adapters.

Components only ever catch OracleError and TransportError; adapters are
wrapped so that whatever their client library raises arrives as one of
those two.
"""


class TaskflowError(Exception):
    """Base class for every error raised by taskflow."""


class OracleError(TaskflowError):
    """The decision oracle failed or returned something unusable."""


class OracleTimeout(OracleError):
    """The decision oracle did not answer within its time budget."""


class TransportError(TaskflowError):
    """The notifier could not deliver a message."""


class InvalidTransition(TaskflowError):
    """A status change or status/action-holder pairing is not allowed."""


class TaskNotFound(TaskflowError):
    """No live task exists with the given id."""


class ClassificationNoise(TaskflowError):
    """The classified category is a known-noise label; no task is created."""
