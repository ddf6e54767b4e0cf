from __future__ import annotations


class ChecksumError(Exception):
    """Base class for checksum pipeline failures."""


class SetupError(ChecksumError):
    """Configuration problem detected before any file is processed."""


class TraversalError(ChecksumError):
    """A directory under the scan root could not be enumerated."""

    def __init__(self, path: str, cause: OSError):
        super().__init__(f"Cannot read directory {path}: {cause}")
        self.path = path
        self.cause = cause


class MalformedRecordError(ChecksumError):
    """A ledger line that cannot be decoded into a record."""


class LedgerWriteError(ChecksumError):
    """The checksum list could not be written; the run cannot continue."""


__all__ = ["ChecksumError", "LedgerWriteError", "MalformedRecordError", "SetupError", "TraversalError"]
