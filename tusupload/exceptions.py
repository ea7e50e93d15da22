"""
Custom exceptions for the tus upload client.
"""


class TusUploadError(Exception):
    """Base exception for all client errors."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ProtocolContractError(TusUploadError):
    """Raised when a request is built for an upload that cannot carry it (e.g. no location yet)."""
    pass


class StorageError(TusUploadError):
    """Raised when the local file store cannot serve a file."""
    pass


class TransferError(TusUploadError):
    """Raised when a transfer cannot be started for the given upload."""
    pass
