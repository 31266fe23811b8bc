class SSHMCPError(Exception):
    """Base class for every failure raised by the session core."""


class ConfigurationError(SSHMCPError):
    """Unknown connection name or invalid connection settings."""


class AuthenticationError(SSHMCPError):
    """No usable credential, unreadable key file, or rejected login."""


class TransportError(SSHMCPError):
    """Dial, tunnel, SOCKS or SSH protocol failure, or a dead session."""


class ValidationError(SSHMCPError):
    """Command rejected by the connection's allow/deny policy."""


class TransferError(SSHMCPError):
    """Local path outside the working tree, or a read/write failure."""


class StreamError(SSHMCPError):
    """Unexpected channel fault while running a command."""
