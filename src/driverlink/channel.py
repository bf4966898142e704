"""Per-object channels and the proxy base class for remote objects."""

import threading
import types
import weakref
from collections.abc import Callable
from collections.abc import Mapping
from typing import TYPE_CHECKING

from driverlink.events import EventEmitter
from driverlink.timeout_settings import TimeoutSettings
from driverlink.waiting import EventPredicate
from driverlink.waiting import expect_event
from driverlink.waiting import wait_for_event

if TYPE_CHECKING:
    from driverlink.connection import Connection

ROOT_GUID: str = ""
ROOT_TYPE: str = "Root"


def filter_none(params: Mapping[str, object] | None) -> dict[str, object]:
    """Drop keys whose value is ``None`` from call parameters.

    :param params: Raw parameters.
    :returns: Parameters without ``None`` values.
    """
    if params is None:
        return {}
    return {key: value for key, value in params.items() if value is not None}


class Channel(EventEmitter):
    """Messaging facade bound to one remote object guid.

    Events the driver pushes for the guid are emitted on the channel with
    the event params as the single argument.
    """

    _connection: "Connection"
    _guid: str

    def __init__(self, connection: "Connection", guid: str) -> None:
        """Initialize a channel.

        :param connection: Connection used to reach the driver.
        :param guid: Remote object guid.
        """
        super().__init__()
        self._connection = connection
        self._guid = guid

    @property
    def guid(self) -> str:
        """Return the remote object guid.

        :returns: Guid.
        """
        return self._guid

    @property
    def connection(self) -> "Connection":
        """Return the connection this channel sends through.

        :returns: Connection.
        """
        return self._connection

    def send_return_as_dict(
        self,
        method: str,
        params: Mapping[str, object] | None = None,
        timeout: float | None = None,
    ) -> object:
        """Call ``method`` remotely and return the whole result.

        Safe to call from many threads at once; each call is correlated by
        its own request id.

        :param method: Remote method name.
        :param params: Call parameters; proxies are sent as guid references.
        :param timeout: Seconds to wait for the response, ``None`` for no limit.
        :returns: Result with guid references replaced by proxies.
        :raises DriverLinkRemoteError: If the driver reports a failure.
        :raises DriverLinkTimeoutError: If the driver or ``timeout`` times out.
        :raises ConnectionClosedError: If the connection stops first.
        """
        pending = self._connection.send_message_to_server(self._guid, method, params)
        return self._connection.wait_for_response(pending, timeout=timeout)

    def send(
        self,
        method: str,
        params: Mapping[str, object] | None = None,
        timeout: float | None = None,
    ) -> object:
        """Call ``method`` remotely and return its unwrapped result.

        The driver wraps results in a single-key object (``{"page": ...}``);
        that value is returned directly and an empty object becomes ``None``.

        :param method: Remote method name.
        :param params: Call parameters.
        :param timeout: Seconds to wait for the response.
        :returns: Unwrapped result.
        """
        result: object = self.send_return_as_dict(method, params, timeout=timeout)
        if isinstance(result, dict) is False:
            return result
        if len(result) == 0:
            return None
        if len(result) == 1:
            return next(iter(result.values()))
        return result

    def send_no_reply(self, method: str, params: Mapping[str, object] | None = None) -> None:
        """Call ``method`` remotely without waiting for or keeping its result.

        :param method: Remote method name.
        :param params: Call parameters.
        :raises DriverLinkTransportError: If the frame cannot be written.
        :raises ConnectionClosedError: If the connection is already stopped.
        """
        self._connection.send_message_to_server(self._guid, method, params, no_reply=True)


class ChannelOwner(EventEmitter):
    """Local proxy for one remote object.

    Subclasses are constructed by the registry from a creation message and
    subscribe to their structural channel events in ``__init__``, before the
    object becomes visible to the dispatch loop. The parent is held weakly:
    the registry owns every live proxy.
    """

    _connection: "Connection"
    _channel: Channel
    _guid: str
    _type: str
    _initializer: Mapping[str, object]
    _parent_ref: "weakref.ReferenceType[ChannelOwner] | None"
    _timeout_settings: TimeoutSettings
    _was_disposed: bool
    _dispose_callbacks: list[Callable[[], None]]
    _dispose_lock: threading.Lock

    def __init__(
        self,
        parent: "ChannelOwner",
        object_type: str,
        guid: str,
        initializer: Mapping[str, object],
    ) -> None:
        """Initialize a proxy under ``parent``.

        :param parent: Owning proxy.
        :param object_type: Remote type tag.
        :param guid: Remote object guid.
        :param initializer: Attributes captured at creation.
        """
        super().__init__()
        self._bind(parent.connection, parent, object_type, guid, initializer)

    def _bind(
        self,
        connection: "Connection",
        parent: "ChannelOwner | None",
        object_type: str,
        guid: str,
        initializer: Mapping[str, object],
    ) -> None:
        self._connection = connection
        self._guid = guid
        self._type = object_type
        self._initializer = types.MappingProxyType(dict(initializer))
        self._channel = Channel(connection, guid)
        self._was_disposed = False
        self._dispose_callbacks = []
        self._dispose_lock = threading.Lock()
        if parent is None:
            self._parent_ref = None
            self._timeout_settings = TimeoutSettings()
        else:
            self._parent_ref = weakref.ref(parent)
            self._timeout_settings = TimeoutSettings(parent.timeout_settings)

    @property
    def guid(self) -> str:
        """Return the remote object guid.

        :returns: Guid.
        """
        return self._guid

    @property
    def object_type(self) -> str:
        """Return the remote type tag.

        :returns: Type tag.
        """
        return self._type

    @property
    def initializer(self) -> Mapping[str, object]:
        """Return the read-only creation snapshot.

        :returns: Initializer mapping.
        """
        return self._initializer

    @property
    def channel(self) -> Channel:
        """Return this object's channel.

        :returns: Channel.
        """
        return self._channel

    @property
    def connection(self) -> "Connection":
        """Return the owning connection.

        :returns: Connection.
        """
        return self._connection

    @property
    def parent(self) -> "ChannelOwner | None":
        """Return the parent proxy while it is alive.

        :returns: Parent proxy or ``None``.
        """
        if self._parent_ref is None:
            return None
        return self._parent_ref()

    @property
    def children(self) -> "list[ChannelOwner]":
        """Return the live child proxies in creation order.

        :returns: Child proxies.
        """
        return self._connection.registry.children(self._guid)

    @property
    def timeout_settings(self) -> TimeoutSettings:
        """Return the timeout settings inherited from the parent.

        :returns: Timeout settings.
        """
        return self._timeout_settings

    @property
    def is_disposed(self) -> bool:
        """Report whether the driver disposed this object.

        :returns: ``True`` after teardown.
        """
        with self._dispose_lock:
            return self._was_disposed

    def set_default_timeout(self, timeout: float | None) -> None:
        """Set the default timeout used by waits on this object and its children.

        :param timeout: Seconds, ``0`` for no limit, ``None`` to inherit.
        """
        self._timeout_settings.set_default_timeout(timeout)

    def add_dispose_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once when this object is disposed.

        :param callback: Callable without arguments.
        """
        with self._dispose_lock:
            self._dispose_callbacks.append(callback)

    def remove_dispose_callback(self, callback: Callable[[], None]) -> None:
        """Forget a dispose callback; missing callbacks are ignored.

        :param callback: Previously added callback.
        """
        with self._dispose_lock:
            try:
                self._dispose_callbacks.remove(callback)
            except ValueError:
                return

    def _on_dispose(self) -> None:
        """Tear down after the registry removed this object.

        Runs dispose callbacks, then drops every channel and owner
        subscription. Later calls are no-ops.
        """
        with self._dispose_lock:
            if self._was_disposed is True:
                return
            self._was_disposed = True
            callbacks: list[Callable[[], None]] = self._dispose_callbacks
            self._dispose_callbacks = []

        for callback in callbacks:
            callback()
        self._channel.remove_all_listeners()
        self.remove_all_listeners()

    def wait_for_event(
        self,
        event: str,
        predicate: EventPredicate | None = None,
        timeout: float | None = None,
    ) -> object:
        """Block until this object emits ``event`` accepted by ``predicate``.

        :param event: Event name.
        :param predicate: Optional payload filter.
        :param timeout: Seconds to wait; defaults to the timeout settings.
        :returns: Event payload.
        """
        return wait_for_event(self, event, predicate=predicate, timeout=timeout)

    def expect_event(
        self,
        event: str,
        trigger: Callable[[], object],
        predicate: EventPredicate | None = None,
        timeout: float | None = None,
    ) -> object:
        """Run ``trigger`` and return the ``event`` payload it causes.

        :param event: Event name.
        :param trigger: Action expected to cause the event.
        :param predicate: Optional payload filter.
        :param timeout: Seconds to wait; defaults to the timeout settings.
        :returns: Event payload.
        """
        return expect_event(self, event, trigger, predicate=predicate, timeout=timeout)

    def __repr__(self) -> str:
        """Return a debugging representation.

        :returns: Representation string.
        """
        return f"<{type(self).__name__} type={self._type!r} guid={self._guid!r}>"


class RootChannelOwner(ChannelOwner):
    """Implicit parent of the objects the driver creates at top level."""

    def __init__(self, connection: "Connection") -> None:
        """Initialize the root proxy.

        :param connection: Owning connection.
        """
        EventEmitter.__init__(self)
        self._bind(connection, None, ROOT_TYPE, ROOT_GUID, {})
