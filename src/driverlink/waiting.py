"""Block callers until a future event satisfies a predicate."""

import concurrent.futures
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from driverlink.errors import ClosedBeforeEventError
from driverlink.errors import ConnectionClosedError
from driverlink.errors import DriverLinkTimeoutError
from driverlink.events import EventEmitter

if TYPE_CHECKING:
    from driverlink.channel import ChannelOwner
    from driverlink.connection import Connection

EventPredicate = Callable[[object], bool]
ErrorFactory = Callable[[], BaseException]


def _event_value(args: tuple[object, ...]) -> object:
    """Collapse emitted handler arguments into one value.

    :param args: Arguments passed to handlers.
    :returns: ``None``, the single argument, or the whole tuple.
    """
    if len(args) == 0:
        return None
    if len(args) == 1:
        return args[0]
    return args


class Waiter:
    """One pending wait: a result slot plus the subscriptions feeding it.

    The first of resolve/reject wins; every subscription the waiter made is
    removed once :meth:`result` returns or :meth:`dispose` is called.
    """

    _description: str
    _future: concurrent.futures.Future
    _cleanups: list[Callable[[], None]]
    _cleanups_lock: threading.Lock

    def __init__(self, description: str) -> None:
        """Initialize an idle waiter.

        :param description: Human-readable subject used in error messages.
        """
        self._description = description
        self._future = concurrent.futures.Future()
        self._cleanups = []
        self._cleanups_lock = threading.Lock()

    @property
    def is_done(self) -> bool:
        """Report whether the wait has been resolved or rejected.

        :returns: ``True`` once settled.
        """
        return self._future.done()

    def _resolve(self, value: object) -> None:
        try:
            self._future.set_result(value)
        except concurrent.futures.InvalidStateError:
            return

    def _reject(self, error: BaseException) -> None:
        try:
            self._future.set_exception(error)
        except concurrent.futures.InvalidStateError:
            return

    def _add_cleanup(self, cleanup: Callable[[], None]) -> None:
        with self._cleanups_lock:
            self._cleanups.append(cleanup)

    def wait_for_event(
        self,
        emitter: EventEmitter,
        event: str,
        predicate: EventPredicate | None = None,
    ) -> None:
        """Resolve with the first ``event`` payload accepted by ``predicate``.

        Rejected payloads are dropped and the subscription stays active. A
        predicate that raises rejects the wait with that exception.

        :param emitter: Emitter to subscribe on.
        :param event: Event name.
        :param predicate: Optional payload filter.
        """

        def listener(*args: object) -> None:
            if self._future.done() is True:
                return
            value: object = _event_value(args)
            if predicate is not None:
                try:
                    accepted: bool = bool(predicate(value))
                except Exception as exc:
                    self._reject(exc)
                    return
                if accepted is False:
                    return
            self._resolve(value)

        emitter.on(event, listener)
        self._add_cleanup(lambda: emitter.remove_listener(event, listener))

    def reject_on_event(
        self,
        emitter: EventEmitter,
        event: str,
        error_factory: ErrorFactory,
    ) -> None:
        """Reject the wait when ``emitter`` emits ``event``.

        :param emitter: Emitter to subscribe on.
        :param event: Event name.
        :param error_factory: Builds the rejection error.
        """

        def listener(*args: object) -> None:
            _ = args
            self._reject(error_factory())

        emitter.on(event, listener)
        self._add_cleanup(lambda: emitter.remove_listener(event, listener))

    def reject_on_dispose(self, owner: "ChannelOwner") -> None:
        """Reject the wait with :class:`ClosedBeforeEventError` when ``owner`` is disposed.

        :param owner: Remote object proxy.
        """

        def on_dispose() -> None:
            self._reject(
                ClosedBeforeEventError(
                    f"{owner.object_type} {owner.guid} was disposed while waiting for {self._description}"
                )
            )

        owner.add_dispose_callback(on_dispose)
        self._add_cleanup(lambda: owner.remove_dispose_callback(on_dispose))
        if owner.is_disposed is True:
            on_dispose()

    def reject_on_connection_close(self, connection: "Connection") -> None:
        """Reject the wait with :class:`ConnectionClosedError` when ``connection`` stops.

        :param connection: Owning connection.
        """

        def on_close(*args: object) -> None:
            _ = args
            self._reject(
                ConnectionClosedError(f"Connection closed while waiting for {self._description}")
            )

        connection.on("close", on_close)
        self._add_cleanup(lambda: connection.remove_listener("close", on_close))
        if connection.is_closed is True:
            on_close()

    def result(self, timeout: float | None = None) -> object:
        """Block until the wait settles, then remove its subscriptions.

        :param timeout: Seconds to wait, ``None`` to wait indefinitely.
        :returns: Accepted event payload.
        :raises DriverLinkTimeoutError: If ``timeout`` elapses first.
        """
        try:
            return self._future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as exc:
            if self._future.done() is True:
                raise
            raise DriverLinkTimeoutError(
                f"Timeout {timeout:.3f}s exceeded while waiting for {self._description}"
            ) from exc
        finally:
            self.dispose()

    def dispose(self) -> None:
        """Remove every subscription made by this waiter."""
        with self._cleanups_lock:
            cleanups: list[Callable[[], None]] = self._cleanups
            self._cleanups = []
        for cleanup in cleanups:
            cleanup()


def _effective_timeout(owner: "ChannelOwner", timeout: float | None) -> float | None:
    """Resolve the wait timeout for ``owner``; zero means no limit.

    :param owner: Remote object proxy.
    :param timeout: Explicit timeout.
    :returns: Timeout in seconds, or ``None`` for no limit.
    """
    effective: float = owner.timeout_settings.timeout(timeout)
    if effective == 0:
        return None
    return effective


def _create_event_waiter(
    owner: "ChannelOwner",
    event: str,
    predicate: EventPredicate | None,
) -> Waiter:
    """Build a waiter for ``event`` that also watches for the owner going away.

    :param owner: Remote object proxy.
    :param event: Event name.
    :param predicate: Optional payload filter.
    :returns: Armed waiter.
    """
    waiter: Waiter = Waiter(f'event "{event}"')
    waiter.wait_for_event(owner, event, predicate)
    if event != "close":
        waiter.reject_on_event(
            owner,
            "close",
            lambda: ClosedBeforeEventError(
                f'{owner.object_type} {owner.guid} closed before event "{event}"'
            ),
        )
    waiter.reject_on_dispose(owner)
    waiter.reject_on_connection_close(owner.connection)
    return waiter


def wait_for_event(
    owner: "ChannelOwner",
    event: str,
    predicate: EventPredicate | None = None,
    timeout: float | None = None,
) -> object:
    """Block until ``owner`` emits ``event`` with a payload accepted by ``predicate``.

    Must not be called from a plain event handler: handlers share one
    delivery thread, so the awaited event could never arrive. Subscribe such
    handlers through :func:`driverlink.events.detached`.

    :param owner: Remote object proxy.
    :param event: Event name.
    :param predicate: Optional payload filter.
    :param timeout: Seconds to wait; defaults to the owner's timeout settings,
        ``0`` waits indefinitely.
    :returns: Accepted event payload.
    :raises ClosedBeforeEventError: If the owner closes or is disposed first.
    :raises ConnectionClosedError: If the connection stops first.
    :raises DriverLinkTimeoutError: If the timeout elapses first.
    """
    waiter: Waiter = _create_event_waiter(owner, event, predicate)
    return waiter.result(_effective_timeout(owner, timeout))


def expect_event(
    owner: "ChannelOwner",
    event: str,
    trigger: Callable[[], object],
    predicate: EventPredicate | None = None,
    timeout: float | None = None,
) -> object:
    """Start waiting for ``event``, run ``trigger``, then return the event payload.

    The subscription exists before ``trigger`` runs, so an event emitted
    synchronously inside ``trigger`` is still observed.

    :param owner: Remote object proxy.
    :param event: Event name.
    :param trigger: Action expected to cause the event.
    :param predicate: Optional payload filter.
    :param timeout: Seconds to wait after ``trigger`` returns.
    :returns: Accepted event payload.
    :raises Exception: Whatever ``trigger`` raises.
    """
    waiter: Waiter = _create_event_waiter(owner, event, predicate)
    try:
        trigger()
    except BaseException:
        waiter.dispose()
        raise
    return waiter.result(_effective_timeout(owner, timeout))
