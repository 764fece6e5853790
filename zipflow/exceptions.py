class ZipflowException(Exception):
    """Base class for all zipflow exceptions."""

class FormatError(ZipflowException):
    """Malformed or corrupted archive structure."""

class UnsupportedFeatureError(ZipflowException):
    """Archive uses a feature that is recognised but not supported (ZIP64, encryption, spanning...)."""

class IntegrityError(ZipflowException):
    """Decoded entry doesn't match its stored CRC or size."""

class UsageError(ZipflowException):
    """Base class for API misuse."""

class EntryInProgress(UsageError):
    """Another entry is still open in the writer."""

class WriterClosed(UsageError):
    """Archive was already finished."""

class EntryNotFound(UsageError, KeyError):
    """No entry with given index or name."""
