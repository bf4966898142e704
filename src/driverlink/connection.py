"""Connection to the driver: request correlation and the dispatch loop."""

import collections
import concurrent.futures
import functools
import logging
import threading
from collections.abc import Callable
from collections.abc import Mapping
from typing import Literal

from driverlink.channel import Channel
from driverlink.channel import ChannelOwner
from driverlink.channel import RootChannelOwner
from driverlink.codec import CreateMessage
from driverlink.codec import DisposeMessage
from driverlink.codec import ErrorPayload
from driverlink.codec import EventMessage
from driverlink.codec import Message
from driverlink.codec import MethodCall
from driverlink.codec import MethodError
from driverlink.codec import MethodResponse
from driverlink.codec import decode_messages
from driverlink.codec import encode_message
from driverlink.errors import ConnectionClosedError
from driverlink.errors import DriverLinkError
from driverlink.errors import DriverLinkProtocolError
from driverlink.errors import DriverLinkRemoteError
from driverlink.errors import DriverLinkTimeoutError
from driverlink.errors import DriverLinkTransportError
from driverlink.errors import ObjectNotFoundError
from driverlink.events import EventEmitter
from driverlink.registry import ObjectFactory
from driverlink.registry import ObjectRegistry
from driverlink.transport import Transport

logger = logging.getLogger(__name__)

ConnectionState = Literal["idle", "running", "stopped"]
_ABANDONED_ID_LIMIT: int = 1024
_READER_JOIN_TIMEOUT_SECONDS: float = 2.0


def _remote_error_from_payload(payload: ErrorPayload) -> DriverLinkError:
    """Build the local exception for a failed method result.

    :param payload: Error details sent by the driver.
    :returns: Timeout error for driver timeouts, remote error otherwise.
    """
    if payload.name == "TimeoutError":
        return DriverLinkTimeoutError(payload.message, remote_stack=payload.stack)
    return DriverLinkRemoteError(payload.name, payload.message, payload.stack)


class _PendingRequest:
    """Bookkeeping for one call awaiting its result."""

    request_id: int
    guid: str
    method: str
    future: concurrent.futures.Future

    def __init__(self, request_id: int, guid: str, method: str) -> None:
        """Initialize a pending request.

        :param request_id: Correlation id.
        :param guid: Target object guid.
        :param method: Remote method name.
        """
        self.request_id = request_id
        self.guid = guid
        self.method = method
        self.future = concurrent.futures.Future()


class Connection(EventEmitter):
    """Drive one transport: send calls, dispatch results, events, and lifecycle.

    A dedicated reader thread decodes frames and is the only mutator of the
    object registry. Event handlers and disposal teardowns run in order on a
    single event thread, never on the reader thread and never while a
    connection lock is held, so handlers may call back into ``send``.

    The connection itself emits ``"close"`` (with the failure reason or
    ``None``) once it stops.
    """

    _transport: Transport
    _registry: ObjectRegistry
    _state: ConnectionState
    _lock: threading.Lock
    _write_lock: threading.Lock
    _next_request_id: int
    _pending_by_id: dict[int, _PendingRequest]
    _abandoned_ids: "collections.OrderedDict[int, str]"
    _reader_thread: threading.Thread | None
    _event_executor: concurrent.futures.ThreadPoolExecutor
    _close_reason: BaseException | None

    def __init__(
        self,
        transport: Transport,
        object_factories: Mapping[str, ObjectFactory] | None = None,
    ) -> None:
        """Initialize an idle connection.

        :param transport: Stream to the driver.
        :param object_factories: Proxy constructors keyed by remote type tag.
        """
        super().__init__()
        self._transport = transport
        factories: Mapping[str, ObjectFactory] = {}
        if object_factories is not None:
            factories = object_factories
        self._registry = ObjectRegistry(RootChannelOwner(self), factories)
        self._state = "idle"
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._next_request_id = 1
        self._pending_by_id = {}
        self._abandoned_ids = collections.OrderedDict()
        self._reader_thread = None
        self._event_executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="driverlink-events",
        )
        self._close_reason = None

    @property
    def state(self) -> ConnectionState:
        """Return the lifecycle state.

        :returns: ``"idle"``, ``"running"``, or ``"stopped"``.
        """
        with self._lock:
            return self._state

    @property
    def is_closed(self) -> bool:
        """Report whether the connection has stopped.

        :returns: ``True`` once stopped.
        """
        return self.state == "stopped"

    @property
    def registry(self) -> ObjectRegistry:
        """Return the object registry.

        :returns: Registry.
        """
        return self._registry

    @property
    def root(self) -> ChannelOwner:
        """Return the implicit root proxy.

        :returns: Root proxy.
        """
        return self._registry.root

    @property
    def pending_request_count(self) -> int:
        """Return the number of calls awaiting a result.

        :returns: In-flight request count.
        """
        with self._lock:
            return len(self._pending_by_id)

    def start(self) -> None:
        """Start the reader thread; a running connection is left as is.

        :raises ConnectionClosedError: If the connection already stopped.
        """
        with self._lock:
            if self._state == "running":
                return
            if self._state == "stopped":
                raise self._closed_error()
            self._state = "running"
            reader_thread: threading.Thread = threading.Thread(
                target=self._read_loop,
                name="driverlink-reader",
                daemon=True,
            )
            self._reader_thread = reader_thread
        reader_thread.start()

    def stop(self) -> None:
        """Stop the connection, failing every pending call."""
        self._shutdown(None)
        reader_thread: threading.Thread | None = self._reader_thread
        if reader_thread is None:
            return
        if reader_thread is threading.current_thread():
            return
        reader_thread.join(timeout=_READER_JOIN_TIMEOUT_SECONDS)

    def join(self, timeout: float | None = None) -> None:
        """Wait for the reader thread to finish.

        :param timeout: Seconds to wait, ``None`` to wait indefinitely.
        """
        reader_thread: threading.Thread | None = self._reader_thread
        if reader_thread is not None:
            reader_thread.join(timeout=timeout)

    def __enter__(self) -> "Connection":
        """Start the connection for a ``with`` block.

        :returns: This connection.
        """
        self.start()
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        """Stop the connection at the end of a ``with`` block.

        :param exc_type: Exception type.
        :param exc_value: Exception value.
        :param exc_traceback: Exception traceback.
        """
        self.stop()

    def _closed_error(self) -> ConnectionClosedError:
        """Build the error delivered to callers after the connection stopped.

        :returns: Connection-closed error chained to the stop reason.
        """
        reason: BaseException | None = self._close_reason
        if reason is None:
            return ConnectionClosedError("Connection closed")
        error: ConnectionClosedError = ConnectionClosedError(f"Connection closed: {reason}")
        error.__cause__ = reason
        return error

    def _shutdown(self, reason: BaseException | None) -> bool:
        """Move to ``stopped`` and release everything waiting on the driver.

        :param reason: Failure that ended the connection, ``None`` for ``stop``.
        :returns: ``True`` when this call performed the shutdown.
        """
        with self._lock:
            if self._state == "stopped":
                return False
            self._state = "stopped"
            self._close_reason = reason
            pending_requests: list[_PendingRequest] = list(self._pending_by_id.values())
            self._pending_by_id.clear()
            self._abandoned_ids.clear()
            self._event_executor.shutdown(wait=False)

        if reason is None:
            logger.debug("Connection stopped")
        else:
            logger.warning("Connection to driver lost: %s", reason)

        try:
            self._transport.close()
        except OSError as exc:
            logger.debug("Closing transport failed: %s", exc)

        for pending in pending_requests:
            pending.future.set_exception(self._closed_error())
        self._registry.fail_type_waiters(self._closed_error())

        try:
            self.emit("close", reason)
        except Exception:
            logger.exception("Connection close handler failed")
        return True

    def _remember_abandoned(self, request_id: int, why: str) -> None:
        """Remember an id whose late result is expected and benign.

        Must be called with ``_lock`` held.

        :param request_id: Request id.
        :param why: Short reason recorded for logging.
        """
        self._abandoned_ids[request_id] = why
        while len(self._abandoned_ids) > _ABANDONED_ID_LIMIT:
            self._abandoned_ids.popitem(last=False)

    def send_message_to_server(
        self,
        guid: str,
        method: str,
        params: Mapping[str, object] | None = None,
        no_reply: bool = False,
    ) -> _PendingRequest | None:
        """Write one method call and register it for correlation.

        :param guid: Target object guid.
        :param method: Remote method name.
        :param params: Call parameters; proxies become guid references.
        :param no_reply: Skip result tracking; the eventual result is dropped.
        :returns: Pending request, or ``None`` when ``no_reply`` is set.
        :raises ConnectionClosedError: If the connection already stopped.
        :raises DriverLinkTransportError: If the frame cannot be written; the
            connection is torn down.
        """
        wire_params: object = self._replace_channels_with_guids(dict(params or {}))

        with self._lock:
            if self._state == "stopped":
                raise self._closed_error()
            request_id: int = self._next_request_id
            self._next_request_id += 1

        frame: bytes = encode_message(MethodCall(request_id, guid, method, wire_params))

        pending: _PendingRequest | None = None
        with self._lock:
            if self._state == "stopped":
                raise self._closed_error()
            if no_reply is True:
                self._remember_abandoned(request_id, "sent without reply")
            else:
                pending = _PendingRequest(request_id, guid, method)
                self._pending_by_id[request_id] = pending

        logger.debug("SEND id=%d %s.%s", request_id, guid, method)
        try:
            with self._write_lock:
                self._transport.write(frame)
        except (OSError, ValueError) as exc:
            with self._lock:
                self._pending_by_id.pop(request_id, None)
            transport_error: DriverLinkTransportError = DriverLinkTransportError(
                f"Failed to write {method!r} for {guid!r} to the driver"
            )
            transport_error.__cause__ = exc
            self._shutdown(transport_error)
            raise transport_error from exc
        return pending

    def wait_for_response(self, pending: _PendingRequest | None, timeout: float | None = None) -> object:
        """Block until ``pending`` is fulfilled.

        On local expiry the request is dropped from the in-flight table and
        its eventual result is discarded as stray.

        :param pending: Pending request returned by :meth:`send_message_to_server`.
        :param timeout: Seconds to wait, ``None`` for no limit.
        :returns: Result with guid references replaced by proxies.
        :raises DriverLinkTimeoutError: If ``timeout`` elapses first.
        """
        if pending is None:
            return None

        try:
            return pending.future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as exc:
            if pending.future.done() is True:
                raise
            with self._lock:
                removed: _PendingRequest | None = self._pending_by_id.pop(pending.request_id, None)
                if removed is not None:
                    self._remember_abandoned(pending.request_id, "timed out locally")
            if removed is None:
                return pending.future.result()
            raise DriverLinkTimeoutError(
                f"Timeout {timeout:.3f}s exceeded while waiting for {pending.method!r} on {pending.guid!r}"
            ) from exc

    def call_on_object_with_known_name(self, object_type: str, timeout: float | None = None) -> ChannelOwner:
        """Return the first proxy of ``object_type``, waiting for its creation.

        :param object_type: Well-known remote type tag, e.g. ``"Playwright"``.
        :param timeout: Seconds to wait, ``None`` for no limit.
        :returns: Proxy.
        :raises ConnectionClosedError: If the connection stops first.
        :raises DriverLinkTimeoutError: If ``timeout`` elapses first.
        """
        future: concurrent.futures.Future = self._registry.wait_for_type(object_type)
        if self.is_closed is True:
            self._registry.fail_type_waiters(self._closed_error())
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as exc:
            if future.done() is True:
                raise
            raise DriverLinkTimeoutError(
                f"Timeout {timeout:.3f}s exceeded while waiting for the {object_type} object"
            ) from exc

    def _read_chunk(self) -> bytes:
        """Read the next chunk, mapping stream failures to transport errors.

        :returns: Chunk bytes, ``b""`` at end of stream.
        :raises DriverLinkTransportError: If reading fails.
        """
        try:
            return self._transport.read_chunk()
        except (OSError, ValueError) as exc:
            raise DriverLinkTransportError("Failed to read from the driver") from exc

    def _read_loop(self) -> None:
        """Decode and dispatch messages until the stream ends or fails."""
        reason: BaseException | None = None
        try:
            for message in decode_messages(self._read_chunk):
                self._dispatch(message)
            reason = DriverLinkTransportError("Driver closed the stream")
        except DriverLinkError as exc:
            reason = exc
        except Exception as exc:
            reason = DriverLinkProtocolError(f"Failed to dispatch a driver message: {exc!r}")
            reason.__cause__ = exc

        if self.is_closed is True:
            return
        self._shutdown(reason)

    def _dispatch(self, message: Message) -> None:
        """Apply one decoded message.

        :param message: Typed message.
        :raises DriverLinkProtocolError: For messages that break the protocol.
        """
        if isinstance(message, (MethodResponse, MethodError)) is True:
            self._dispatch_result(message)
            return

        if isinstance(message, CreateMessage) is True:
            initializer: object = self._replace_guids_with_channels(message.initializer)
            self._registry.create(message.parent_guid, message.type, message.guid, initializer)
            logger.debug("CREATE %s %s under %r", message.type, message.guid, message.parent_guid)
            return

        if isinstance(message, DisposeMessage) is True:
            removed: list[ChannelOwner] = self._registry.dispose(message.guid)
            logger.debug("DISPOSE %s (%d objects)", message.guid, len(removed))
            for owner in removed:
                self._schedule(owner._on_dispose, f"disposal of {owner.guid}")
            return

        if isinstance(message, EventMessage) is True:
            self._dispatch_event(message)
            return

        raise DriverLinkProtocolError(
            f"Unexpected {type(message).__name__} from the driver"
        )

    def _dispatch_result(self, message: MethodResponse | MethodError) -> None:
        """Fulfill the pending request matching a result.

        :param message: Response or error message.
        """
        abandoned_reason: str | None = None
        with self._lock:
            pending: _PendingRequest | None = self._pending_by_id.pop(message.id, None)
            if pending is None:
                abandoned_reason = self._abandoned_ids.pop(message.id, None)

        if pending is None:
            if abandoned_reason is not None:
                logger.debug("Discarding result for request %d (%s)", message.id, abandoned_reason)
            else:
                logger.warning("Discarding result for unknown request id %d", message.id)
            return

        logger.debug("RECV id=%d %s.%s", message.id, pending.guid, pending.method)
        if isinstance(message, MethodError) is True:
            pending.future.set_exception(_remote_error_from_payload(message.error))
            return

        try:
            result: object = self._replace_guids_with_channels(message.result)
        except ObjectNotFoundError as exc:
            pending.future.set_exception(exc)
            return
        pending.future.set_result(result)

    def _dispatch_event(self, message: EventMessage) -> None:
        """Queue delivery of one event to its target's channel.

        :param message: Event message.
        """
        owner: ChannelOwner | None = self._registry.get(message.guid)
        if owner is None:
            logger.debug("Ignoring event %r for unknown guid %r", message.method, message.guid)
            return
        try:
            params: object = self._replace_guids_with_channels(message.params)
        except ObjectNotFoundError as exc:
            logger.debug("Ignoring event %r on %r: %s", message.method, message.guid, exc)
            return
        deliver: Callable[[], object] = functools.partial(owner.channel.emit, message.method, params)
        self._schedule(deliver, f"event {message.method!r} on {message.guid!r}")

    def _schedule(self, callback: Callable[[], object], description: str) -> None:
        """Run ``callback`` on the event thread after previously scheduled work.

        :param callback: Work item.
        :param description: Subject used when logging failures.
        """
        with self._lock:
            if self._state == "stopped":
                logger.debug("Dropping %s after shutdown", description)
                return
            self._event_executor.submit(self._run_handler, callback, description)

    def _run_handler(self, callback: Callable[[], object], description: str) -> None:
        """Invoke one scheduled callback, logging its failure.

        :param callback: Work item.
        :param description: Subject used when logging failures.
        """
        try:
            callback()
        except Exception:
            logger.exception("Handler failed during %s", description)

    def _replace_guids_with_channels(self, payload: object) -> object:
        """Replace ``{"guid": ...}`` references with live proxies.

        :param payload: Decoded JSON value.
        :returns: Value with references resolved.
        :raises ObjectNotFoundError: If a reference names no live proxy.
        """
        if isinstance(payload, list) is True:
            return [self._replace_guids_with_channels(item) for item in payload]
        if isinstance(payload, dict) is True:
            guid: object = payload.get("guid")
            if len(payload) == 1 and isinstance(guid, str) is True:
                return self._registry.lookup(guid)
            return {key: self._replace_guids_with_channels(value) for key, value in payload.items()}
        return payload

    def _replace_channels_with_guids(self, payload: object) -> object:
        """Replace proxies and channels with ``{"guid": ...}`` references.

        :param payload: Call parameter value.
        :returns: JSON-compatible value.
        """
        if isinstance(payload, ChannelOwner) is True:
            return {"guid": payload.guid}
        if isinstance(payload, Channel) is True:
            return {"guid": payload.guid}
        if isinstance(payload, (list, tuple)) is True:
            return [self._replace_channels_with_guids(item) for item in payload]
        if isinstance(payload, dict) is True:
            return {key: self._replace_channels_with_guids(value) for key, value in payload.items()}
        return payload
