class BootstrapError(Exception):
    """Raised when a recoverable bootstrap error occurs."""
