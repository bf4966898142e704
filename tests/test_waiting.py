"""Tests for waiting on events from remote objects."""

import threading
from collections.abc import Iterator

import pytest

from driverlink.connection import Connection
from driverlink.errors import ClosedBeforeEventError
from driverlink.errors import ConnectionClosedError
from driverlink.errors import DriverLinkTimeoutError
from driverlink.waiting import Waiter
from tests.fixtures.fake_driver import FakeDriverTransport
from tests.fixtures.fake_driver import RecordingObject
from tests.fixtures.fake_driver import create_frame
from tests.fixtures.fake_driver import dispose_frame
from tests.fixtures.fake_driver import event_frame


@pytest.fixture()
def transport() -> FakeDriverTransport:
    return FakeDriverTransport()


@pytest.fixture()
def recorder(transport: FakeDriverTransport) -> Iterator[RecordingObject]:
    """Provide a ``Recorder`` proxy on a running connection.

    :param transport: Fake driver transport.
    :yields: Proxy with guid ``rec``.
    """
    connection: Connection = Connection(transport, object_factories={"Recorder": RecordingObject})
    try:
        connection.start()
        transport.push(create_frame("", "Recorder", "rec", {}))
        yield connection.call_on_object_with_known_name("Recorder", timeout=5)
    finally:
        connection.stop()


def _later(delay: float, action) -> threading.Timer:
    """Run ``action`` on a timer thread after ``delay`` seconds.

    :param delay: Seconds.
    :param action: Callable without arguments.
    :returns: Started timer.
    """
    timer: threading.Timer = threading.Timer(delay, action)
    timer.start()
    return timer


def test_wait_returns_first_matching_payload(
    recorder: RecordingObject,
    transport: FakeDriverTransport,
) -> None:
    """Payloads rejected by the predicate are skipped."""

    def push_pings() -> None:
        for index in range(5):
            transport.push(event_frame("rec", "ping", {"n": index}))

    timer: threading.Timer = _later(0.05, push_pings)
    try:
        payload: object = recorder.wait_for_event("ping", predicate=lambda params: params["n"] == 3, timeout=5)
    finally:
        timer.join()
    assert payload == {"n": 3}
    assert recorder.listener_count("ping") == 0


def test_wait_sees_event_despite_failing_handler(
    recorder: RecordingObject,
    transport: FakeDriverTransport,
) -> None:
    """An earlier subscriber that raises does not starve the waiter."""

    def broken(params: object) -> None:
        raise RuntimeError("user handler bug")

    recorder.on("ping", broken)
    timer: threading.Timer = _later(0.05, lambda: transport.push(event_frame("rec", "ping", {"n": 1})))
    try:
        payload: object = recorder.wait_for_event("ping", timeout=1.0)
    finally:
        timer.join()
    assert payload == {"n": 1}
    assert recorder.listener_count("ping") == 1


def test_owner_close_rejects_wait(recorder: RecordingObject) -> None:
    timer: threading.Timer = _later(0.05, lambda: recorder.emit("close"))
    try:
        with pytest.raises(ClosedBeforeEventError):
            recorder.wait_for_event("ping", timeout=5)
    finally:
        timer.join()


def test_waiting_for_close_itself_resolves(recorder: RecordingObject) -> None:
    timer: threading.Timer = _later(0.05, lambda: recorder.emit("close"))
    try:
        payload: object = recorder.wait_for_event("close", timeout=5)
    finally:
        timer.join()
    assert payload is None


def test_disposal_rejects_wait(recorder: RecordingObject, transport: FakeDriverTransport) -> None:
    timer: threading.Timer = _later(0.05, lambda: transport.push(dispose_frame("rec")))
    try:
        with pytest.raises(ClosedBeforeEventError):
            recorder.wait_for_event("ping", timeout=5)
    finally:
        timer.join()


def test_wait_on_disposed_object_fails_immediately(
    recorder: RecordingObject,
    transport: FakeDriverTransport,
) -> None:
    disposed: threading.Event = threading.Event()
    recorder.add_dispose_callback(disposed.set)
    transport.push(dispose_frame("rec"))
    assert disposed.wait(timeout=5) is True
    with pytest.raises(ClosedBeforeEventError):
        recorder.wait_for_event("ping", timeout=5)


def test_connection_close_rejects_wait(recorder: RecordingObject, transport: FakeDriverTransport) -> None:
    timer: threading.Timer = _later(0.05, transport.finish)
    try:
        with pytest.raises(ConnectionClosedError):
            recorder.wait_for_event("ping", timeout=5)
    finally:
        timer.join()


def test_wait_times_out_and_cleans_up(recorder: RecordingObject) -> None:
    with pytest.raises(DriverLinkTimeoutError):
        recorder.wait_for_event("ping", timeout=0.05)
    assert recorder.listener_count("ping") == 0
    assert recorder.listener_count("close") == 0
    assert recorder.connection.listener_count("close") == 0


def test_default_timeout_comes_from_settings(recorder: RecordingObject) -> None:
    recorder.set_default_timeout(0.05)
    with pytest.raises(DriverLinkTimeoutError):
        recorder.wait_for_event("ping")


def test_raising_predicate_fails_wait(recorder: RecordingObject) -> None:
    def predicate(value: object) -> bool:
        raise KeyError("bad payload")

    timer: threading.Timer = _later(0.05, lambda: recorder.emit("ping", {"n": 1}))
    try:
        with pytest.raises(KeyError):
            recorder.wait_for_event("ping", predicate=predicate, timeout=5)
    finally:
        timer.join()


def test_expect_event_observes_synchronous_emission(recorder: RecordingObject) -> None:
    """The subscription exists before the trigger runs."""
    payload: object = recorder.expect_event("ping", lambda: recorder.emit("ping", {"n": 7}), timeout=1)
    assert payload == {"n": 7}


def test_expect_event_propagates_trigger_failure(recorder: RecordingObject) -> None:
    def trigger() -> None:
        raise RuntimeError("click failed")

    with pytest.raises(RuntimeError):
        recorder.expect_event("ping", trigger, timeout=1)
    assert recorder.listener_count("ping") == 0


def test_waiter_first_settlement_wins() -> None:
    """Resolution after rejection is ignored."""
    waiter: Waiter = Waiter("test")
    waiter._reject(ConnectionClosedError("closed"))
    waiter._resolve("late value")
    assert waiter.is_done is True
    with pytest.raises(ConnectionClosedError):
        waiter.result(timeout=0)


def test_connection_stop_rejects_wait(recorder: RecordingObject) -> None:
    """Stopping the connection unblocks a wait with an always-true predicate."""
    timer: threading.Timer = _later(0.05, recorder.connection.stop)
    try:
        with pytest.raises(ConnectionClosedError):
            recorder.wait_for_event("foo", predicate=lambda value: True, timeout=5)
    finally:
        timer.join()
