"""
Error taxonomy for the EPG ingestion pipeline.

Transient fetch errors are retried inside the fetch client, malformed documents
fail a single source, structural errors abort the whole refresh.
"""


class EPGError(Exception):
    """Base class for EPG pipeline errors"""
    pass


class TransientFetchError(EPGError):
    """Raised when a source cannot be downloaded (network, timeout, non-2xx)"""

    def __init__(self, message: str, *, url: str, status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class MalformedDocumentError(EPGError):
    """Raised when an XMLTV document cannot be tokenized"""
    pass


class StructuralOrchestrationError(EPGError):
    """Raised when a refresh fails outside the per-source isolation boundary"""
    pass
