"""Error taxonomy for resolution, fetching and the dual-tier store.

Failures local to one identifier or one target are absorbed into result
aggregates by the pipeline; only ``MetadataSourceUnavailable`` propagates as
a hard error out of a DOI resolution run.
"""

from typing import Any


class BiodataError(Exception):
    """Base class for all errors raised by biodata_manager."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, **self.context}


class InvalidSpecifier(BiodataError):
    """A dataset specifier or identifier could not be parsed."""


class MetadataSourceUnavailable(BiodataError):
    """The structured metadata for a DOI could not be obtained (fatal)."""


class NoSupportedIdentifiers(BiodataError):
    """The DOI resolved but yielded no supported dataset targets (terminal, not an error exit)."""


class IdentifierInvalid(BiodataError):
    """A registry confirmed that an identifier does not exist."""


class IdentifierUnreachable(BiodataError):
    """A registry could not be reached to judge an identifier."""


class HydrationBranchFailed(BiodataError):
    """Listing the children of a container identifier failed."""


class ProviderFetchFailed(BiodataError):
    """A provider could not produce a complete file set for a target."""


class StoreWriteFailed(BiodataError):
    """Staging or relocating an entry into a store tier failed."""


class DatasetNotFound(BiodataError):
    """Neither the project store nor the global cache holds the requested key."""
