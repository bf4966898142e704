"""Ordered, thread-safe event subscriptions."""

import functools
import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[..., object]


class _Subscription:
    """One registered handler for one event name."""

    handler: EventHandler
    once: bool

    def __init__(self, handler: EventHandler, once: bool) -> None:
        """Initialize a subscription.

        :param handler: Callable invoked with the emitted arguments.
        :param once: Whether to remove the subscription after its first delivery.
        """
        self.handler = handler
        self.once = once


class EventEmitter:
    """Deliver named events to subscribers in subscription order.

    Subscriptions may be added or removed from any thread, including from a
    handler while an emit is in progress; an emit works on a snapshot, and a
    ``once`` subscription is delivered at most once even under concurrent
    emits.
    """

    _listeners: dict[str, list[_Subscription]]
    _listeners_lock: threading.Lock

    def __init__(self) -> None:
        """Initialize an emitter without subscriptions."""
        self._listeners = {}
        self._listeners_lock = threading.Lock()

    def on(self, event: str, handler: EventHandler) -> None:
        """Subscribe ``handler`` to every future ``event``.

        :param event: Event name.
        :param handler: Handler callable.
        """
        self._add(event, handler, once=False)

    def once(self, event: str, handler: EventHandler) -> None:
        """Subscribe ``handler`` to the next ``event`` only.

        :param event: Event name.
        :param handler: Handler callable.
        """
        self._add(event, handler, once=True)

    def _add(self, event: str, handler: EventHandler, once: bool) -> None:
        with self._listeners_lock:
            subscriptions: list[_Subscription] = self._listeners.setdefault(event, [])
            subscriptions.append(_Subscription(handler, once))

    def remove_listener(self, event: str, handler: EventHandler) -> None:
        """Remove the earliest subscription of ``handler`` to ``event``.

        :param event: Event name.
        :param handler: Handler callable; missing subscriptions are ignored.
        """
        with self._listeners_lock:
            subscriptions: list[_Subscription] | None = self._listeners.get(event)
            if subscriptions is None:
                return
            for index, subscription in enumerate(subscriptions):
                if subscription.handler == handler:
                    del subscriptions[index]
                    break
            if len(subscriptions) == 0:
                self._listeners.pop(event, None)

    def remove_all_listeners(self, event: str | None = None) -> None:
        """Remove every subscription, or every subscription to ``event``.

        :param event: Optional event name.
        """
        with self._listeners_lock:
            if event is None:
                self._listeners.clear()
                return
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        """Return the number of subscriptions to ``event``.

        :param event: Event name.
        :returns: Subscription count.
        """
        with self._listeners_lock:
            return len(self._listeners.get(event, []))

    def emit(self, event: str, *args: object) -> bool:
        """Invoke each subscription to ``event`` in order.

        A handler that raises is logged and does not keep the event from the
        subscriptions after it.

        :param event: Event name.
        :param args: Positional arguments passed to each handler.
        :returns: ``True`` when at least one handler was invoked.
        """
        with self._listeners_lock:
            snapshot: list[_Subscription] = list(self._listeners.get(event, []))

        delivered: bool = False
        for subscription in snapshot:
            if subscription.once is True:
                claimed: bool = self._claim_once(event, subscription)
                if claimed is False:
                    continue
            delivered = True
            try:
                subscription.handler(*args)
            except Exception:
                logger.exception("Handler %r for %r failed", subscription.handler, event)
        return delivered

    def _claim_once(self, event: str, subscription: _Subscription) -> bool:
        """Remove a ``once`` subscription, reporting whether this caller won.

        :param event: Event name.
        :param subscription: Subscription to claim.
        :returns: ``True`` when the subscription was still registered.
        """
        with self._listeners_lock:
            subscriptions: list[_Subscription] | None = self._listeners.get(event)
            if subscriptions is None:
                return False
            for index, candidate in enumerate(subscriptions):
                if candidate is subscription:
                    del subscriptions[index]
                    if len(subscriptions) == 0:
                        self._listeners.pop(event, None)
                    return True
            return False


def run_detached(function: EventHandler, *args: object) -> threading.Thread:
    """Call ``function(*args)`` on a new daemon thread.

    Failures are logged; nothing is returned to the caller.

    :param function: Callable to run.
    :param args: Positional arguments for ``function``.
    :returns: The started thread.
    """

    def _invoke() -> None:
        try:
            function(*args)
        except Exception:
            logger.exception("Detached call %r failed", function)

    thread: threading.Thread = threading.Thread(target=_invoke, name="driverlink-detached", daemon=True)
    thread.start()
    return thread


def detached(handler: EventHandler) -> EventHandler:
    """Wrap ``handler`` so every delivery runs on its own thread.

    Events are delivered one at a time on the connection's event thread. A
    handler that makes protocol calls whose answers depend on later events
    (for example a ``page`` handler while routes are intercepted) must not
    block that thread; subscribe it wrapped::

        context.on("page", detached(on_page))

    Deliveries of a detached handler may run concurrently and out of order.
    Keep the returned wrapper to remove the subscription later.

    :param handler: Handler callable.
    :returns: Wrapper to subscribe in place of ``handler``.
    """

    @functools.wraps(handler)
    def _deliver(*args: object) -> None:
        run_detached(handler, *args)

    return _deliver
