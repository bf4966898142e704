"""Tests for the event emitter and timeout settings."""

import logging
import threading

import pytest

from driverlink.events import EventEmitter
from driverlink.events import detached
from driverlink.timeout_settings import DEFAULT_TIMEOUT_SECONDS
from driverlink.timeout_settings import TimeoutSettings


def test_handlers_run_in_subscription_order() -> None:
    """Deliver one event to three handlers."""
    emitter: EventEmitter = EventEmitter()
    calls: list[str] = []
    emitter.on("load", lambda value: calls.append(f"a:{value}"))
    emitter.once("load", lambda value: calls.append(f"b:{value}"))
    emitter.on("load", lambda value: calls.append(f"c:{value}"))

    delivered: bool = emitter.emit("load", 1)
    assert delivered is True
    emitter.emit("load", 2)
    assert calls == ["a:1", "b:1", "c:1", "a:2", "c:2"]


def test_emit_without_listeners_reports_false() -> None:
    emitter: EventEmitter = EventEmitter()
    assert emitter.emit("nothing") is False


def test_remove_listener_removes_earliest_match_only() -> None:
    """A handler subscribed twice is removed one subscription at a time."""
    emitter: EventEmitter = EventEmitter()
    calls: list[int] = []

    def handler(value: int) -> None:
        calls.append(value)

    emitter.on("tick", handler)
    emitter.on("tick", handler)
    emitter.remove_listener("tick", handler)
    emitter.emit("tick", 1)
    assert calls == [1]

    emitter.remove_listener("tick", handler)
    emitter.remove_listener("tick", handler)
    emitter.emit("tick", 2)
    assert calls == [1]
    assert emitter.listener_count("tick") == 0


def test_handler_may_unsubscribe_during_emit() -> None:
    """Removing a later handler mid-emit does not affect the running emit."""
    emitter: EventEmitter = EventEmitter()
    calls: list[str] = []

    def second(value: object) -> None:
        calls.append("second")

    def first(value: object) -> None:
        calls.append("first")
        emitter.remove_listener("e", second)

    emitter.on("e", first)
    emitter.on("e", second)
    emitter.emit("e", None)
    emitter.emit("e", None)
    assert calls == ["first", "second", "first"]


def test_once_is_delivered_once_under_concurrent_emits() -> None:
    """Many threads emit while a single ``once`` subscription is pending."""
    emitter: EventEmitter = EventEmitter()
    hits: list[int] = []
    hits_lock: threading.Lock = threading.Lock()

    def handler(value: int) -> None:
        with hits_lock:
            hits.append(value)

    emitter.once("go", handler)
    barrier: threading.Barrier = threading.Barrier(8)

    def worker(index: int) -> None:
        barrier.wait()
        emitter.emit("go", index)

    threads: list[threading.Thread] = [threading.Thread(target=worker, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(hits) == 1


def test_failing_handler_does_not_hide_event_from_later_handlers(caplog: pytest.LogCaptureFixture) -> None:
    """The failure is logged and the remaining subscriptions still run."""
    caplog.set_level(logging.ERROR, logger="driverlink.events")
    emitter: EventEmitter = EventEmitter()
    calls: list[str] = []

    def broken(value: object) -> None:
        raise RuntimeError("handler failed")

    emitter.on("e", lambda value: calls.append(f"first:{value}"))
    emitter.on("e", broken)
    emitter.once("e", lambda value: calls.append(f"last:{value}"))

    delivered: bool = emitter.emit("e", 1)
    assert delivered is True
    assert calls == ["first:1", "last:1"]
    assert emitter.listener_count("e") == 2
    failures: list[logging.LogRecord] = [record for record in caplog.records if record.exc_info is not None]
    assert len(failures) == 1
    assert isinstance(failures[0].exc_info[1], RuntimeError) is True


def test_detached_handler_runs_off_the_emitting_thread() -> None:
    emitter: EventEmitter = EventEmitter()
    seen: list[tuple[object, str]] = []
    done: threading.Event = threading.Event()

    def handler(value: object) -> None:
        seen.append((value, threading.current_thread().name))
        done.set()

    wrapper = detached(handler)
    emitter.on("e", wrapper)
    emitter.emit("e", "payload")
    assert done.wait(timeout=5) is True
    assert seen == [("payload", "driverlink-detached")]

    emitter.remove_listener("e", wrapper)
    assert emitter.listener_count("e") == 0


def test_remove_all_listeners_scoped_and_global() -> None:
    emitter: EventEmitter = EventEmitter()
    emitter.on("a", print)
    emitter.on("b", print)
    emitter.remove_all_listeners("a")
    assert emitter.listener_count("a") == 0
    assert emitter.listener_count("b") == 1
    emitter.remove_all_listeners()
    assert emitter.listener_count("b") == 0


def test_timeout_settings_inherit_from_parent() -> None:
    """Overrides win, then own defaults, then the parent chain."""
    parent: TimeoutSettings = TimeoutSettings()
    child: TimeoutSettings = TimeoutSettings(parent)
    assert child.timeout() == DEFAULT_TIMEOUT_SECONDS

    parent.set_default_timeout(5.0)
    assert child.timeout() == 5.0
    assert child.navigation_timeout() == 5.0

    child.set_default_timeout(2.0)
    assert child.timeout() == 2.0
    assert child.timeout(0.5) == 0.5

    parent.set_default_navigation_timeout(9.0)
    child.set_default_timeout(None)
    assert child.navigation_timeout() == 9.0
    assert child.timeout() == 5.0


def test_timeout_settings_reject_negative_values() -> None:
    settings: TimeoutSettings = TimeoutSettings()
    with pytest.raises(ValueError):
        settings.set_default_timeout(-1)
