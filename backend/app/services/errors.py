from __future__ import annotations


class CatalogServiceError(Exception):
    pass


class TransientRemoteError(CatalogServiceError):
    """A provider call failed; the affected item is degraded, never the run."""


class MalformedResponseError(TransientRemoteError):
    pass


class CatalogLoadError(CatalogServiceError):
    pass


class ReconciliationInProgressError(CatalogServiceError):
    pass
