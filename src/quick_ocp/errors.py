"""
Error types raised by the pipeline stages

Fatal errors derive from `QuickOcpError` and stop the run. `BestEffortWarning` only ever gets logged.
"""
from typing import Optional, Sequence

SUPPORTED_VERSIONS_HINT = "Check supported OCP versions at https://github.com/crc-org/crc/releases"


class QuickOcpError(Exception):
    """
    Base class for fatal pipeline errors

    :param message: What went wrong
    :param hint: What the user can do about it
    """

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint


class ValidationError(QuickOcpError):
    pass


class ResolutionError(QuickOcpError):
    pass


class DownloadError(QuickOcpError):

    def __init__(self, message: str, attempts: Sequence = (), hint: Optional[str] = None):
        super().__init__(message, hint)
        self.attempts = list(attempts)


class ClusterStartError(QuickOcpError):
    pass


class ReadinessTimeoutError(QuickOcpError):

    def __init__(self, message: str, blockers: Sequence = (), hint: Optional[str] = None):
        super().__init__(message, hint)
        self.blockers = list(blockers)


class BestEffortWarning(UserWarning):
    """A host tuning or cleanup step that failed without stopping the run"""
