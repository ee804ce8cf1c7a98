"""Errors raised by a reconciliation pass.

Every error is surfaced to the controller harness, which owns requeueing
and backoff. Nothing here is retried in-process.
"""


class ReconcileError(Exception):
    """A reconciliation pass failed; the key should be requeued."""


class ResourceCreationError(ReconcileError):
    """The derived resource could not be created."""


class ResourceNotOwnedError(ReconcileError):
    """A resource with the derived name exists but is controlled by someone else."""


class ReconcileTimeoutError(ReconcileError):
    """The reconciliation deadline expired before the pass completed."""
