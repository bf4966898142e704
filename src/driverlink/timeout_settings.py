"""Default timeouts inherited down the remote object tree."""

DEFAULT_TIMEOUT_SECONDS: float = 30.0


class TimeoutSettings:
    """Resolve the effective timeout from an override, own default, or parent."""

    _parent: "TimeoutSettings | None"
    _default_timeout: float | None
    _default_navigation_timeout: float | None

    def __init__(self, parent: "TimeoutSettings | None" = None) -> None:
        """Initialize settings.

        :param parent: Settings consulted when no own default is set.
        """
        self._parent = parent
        self._default_timeout = None
        self._default_navigation_timeout = None

    def set_default_timeout(self, timeout: float | None) -> None:
        """Set or clear the default timeout.

        :param timeout: Timeout in seconds, or ``None`` to inherit.
        :raises ValueError: If ``timeout`` is negative.
        """
        _validate_timeout(timeout)
        self._default_timeout = timeout

    def set_default_navigation_timeout(self, timeout: float | None) -> None:
        """Set or clear the default navigation timeout.

        :param timeout: Timeout in seconds, or ``None`` to inherit.
        :raises ValueError: If ``timeout`` is negative.
        """
        _validate_timeout(timeout)
        self._default_navigation_timeout = timeout

    def timeout(self, override: float | None = None) -> float:
        """Return the effective timeout.

        :param override: Per-call timeout that wins when given.
        :returns: Timeout in seconds.
        """
        if override is not None:
            return override
        if self._default_timeout is not None:
            return self._default_timeout
        if self._parent is not None:
            return self._parent.timeout()
        return DEFAULT_TIMEOUT_SECONDS

    def navigation_timeout(self, override: float | None = None) -> float:
        """Return the effective navigation timeout.

        Navigation defaults fall back to the general default at each level.

        :param override: Per-call timeout that wins when given.
        :returns: Timeout in seconds.
        """
        if override is not None:
            return override
        if self._default_navigation_timeout is not None:
            return self._default_navigation_timeout
        if self._default_timeout is not None:
            return self._default_timeout
        if self._parent is not None:
            return self._parent.navigation_timeout()
        return DEFAULT_TIMEOUT_SECONDS


def _validate_timeout(timeout: float | None) -> None:
    """Reject negative timeouts.

    :param timeout: Candidate timeout.
    :raises ValueError: If ``timeout`` is negative.
    """
    if timeout is not None and timeout < 0:
        raise ValueError("timeout must be non-negative")
