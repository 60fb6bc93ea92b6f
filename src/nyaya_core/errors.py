"""Error taxonomy shared by the storage, cache and coordination layers."""

from __future__ import annotations


class StorageError(Exception):
    """Base class for storage-level failures."""


class BackendUnavailable(StorageError):
    """A backend could not be opened or is not supported in this environment."""


class TransactionFailure(StorageError):
    """A single operation against an open backend failed."""


class FlatStoreQuotaExceeded(TransactionFailure):
    """The flat key/value store would grow past its configured byte quota."""


class SerializationFailure(StorageError):
    """A payload cannot be round-tripped through JSON."""


class MigrationFailure(StorageError):
    """Legacy data could not be migrated; the migration flag stays unset."""


class StorageUnavailableError(StorageError):
    """Both the primary and the fallback backend failed for the same call."""


class HashComputationFailure(Exception):
    """The cryptographic digest could not be computed."""


class MissingBatchResultError(Exception):
    """A batch function returned fewer outputs than it received inputs."""


class ApiKeyUnavailableError(Exception):
    """Every configured API key is cooling down after a quota or auth failure."""
