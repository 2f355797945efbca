class ScanError(Exception):
    """Base exception for scan processing failures."""


class ValidationError(ScanError):
    """Raised when a scan request is malformed (blank tag, unknown mode)."""


class TransientIOError(ScanError):
    """Raised when storage is unreachable or times out mid-operation."""
