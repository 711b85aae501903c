class ArchivistError(Exception):
    """Base class for application-specific errors."""
    pass

class ProbeError(ArchivistError):
    """ffprobe could not be run or its output could not be parsed."""
    pass

class ProbeCancelledError(ProbeError):
    """The ffprobe process was terminated because the scan was cancelled."""
    pass

class DirectoryAccessError(ArchivistError):
    """The scan root is missing or is not a directory."""
    pass

class ScanInProgressError(ArchivistError):
    """A scan is already running on this scheduler."""
    pass

class LibraryStoreError(ArchivistError):
    """The persisted library file could not be read or written."""
    pass
