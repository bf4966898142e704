"""Custom error types for driverlink."""


class DriverLinkError(Exception):
    """Base class for all driverlink errors."""


class DriverLinkTransportError(DriverLinkError):
    """Raised when reading from or writing to the driver stream fails."""


class DriverLinkProtocolError(DriverLinkError):
    """Raised for malformed or unexpected messages on the driver channel."""


class ObjectNotFoundError(DriverLinkProtocolError):
    """Raised when a guid does not name a live remote object."""

    guid: str

    def __init__(self, guid: str) -> None:
        """Initialize a lookup failure.

        :param guid: Guid that was not found.
        """
        self.guid = guid
        super().__init__(f"Unknown or disposed remote object guid: {guid!r}")


class DriverLinkRemoteError(DriverLinkError):
    """Raised when the driver reports a failure for one call."""

    remote_name: str
    remote_message: str
    remote_stack: str

    def __init__(
        self,
        remote_name: str,
        remote_message: str,
        remote_stack: str,
    ) -> None:
        """Initialize a remote error wrapper.

        :param remote_name: Remote error name.
        :param remote_message: Remote error message.
        :param remote_stack: Remote stack text.
        """
        self.remote_name = remote_name
        self.remote_message = remote_message
        self.remote_stack = remote_stack
        super().__init__(remote_message)

    def __str__(self) -> str:
        """Return the remote message, with the remote stack when present.

        :returns: Formatted message.
        """
        if len(self.remote_stack) == 0:
            return self.remote_message
        return f"{self.remote_message}\nRemote stack:\n{self.remote_stack}"


class DriverLinkTimeoutError(DriverLinkError):
    """Raised when an action or wait exceeds its time budget.

    The driver signals its own timeouts with the ``TimeoutError`` error name;
    local expiry of ``send`` or of a wait raises this type as well.
    """

    remote_stack: str

    def __init__(self, message: str, remote_stack: str = "") -> None:
        """Initialize a timeout error.

        :param message: Error message.
        :param remote_stack: Remote stack text, empty for local timeouts.
        """
        self.remote_stack = remote_stack
        super().__init__(message)


class ConnectionClosedError(DriverLinkError):
    """Raised to pending and future callers once the connection is closed."""


class ClosedBeforeEventError(DriverLinkError):
    """Raised when the watched object goes away before the awaited event."""
