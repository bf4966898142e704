"""In-memory driver stand-in used by the connection tests."""

import queue
import threading
from collections.abc import Callable
from collections.abc import Mapping

from driverlink.channel import ChannelOwner
from driverlink.codec import FrameDecoder
from driverlink.codec import encode_frame
from driverlink.transport import Transport

Responder = Callable[[dict[str, object]], list[dict[str, object]] | None]


def create_frame(
    parent_guid: str,
    object_type: str,
    guid: str,
    initializer: Mapping[str, object] | None = None,
) -> dict[str, object]:
    """Build a creation message.

    :param parent_guid: Parent guid.
    :param object_type: Remote type tag.
    :param guid: New guid.
    :param initializer: Creation attributes.
    :returns: Wire message.
    """
    return {
        "guid": parent_guid,
        "method": "__create__",
        "params": {"type": object_type, "guid": guid, "initializer": dict(initializer or {})},
    }


def dispose_frame(guid: str) -> dict[str, object]:
    return {"guid": guid, "method": "__dispose__"}


def event_frame(guid: str, method: str, params: Mapping[str, object] | None = None) -> dict[str, object]:
    return {"guid": guid, "method": method, "params": dict(params or {})}


def response_frame(request_id: int, result: object = None) -> dict[str, object]:
    if result is None:
        return {"id": request_id}
    return {"id": request_id, "result": result}


def error_frame(request_id: int, name: str, message: str, stack: str = "") -> dict[str, object]:
    return {"id": request_id, "error": {"error": {"name": name, "message": message, "stack": stack}}}


class FakeDriverTransport(Transport):
    """Transport whose far end is scripted by the test.

    Frames written by the connection are decoded and recorded; an optional
    responder answers each one. Inbound frames are queued with :meth:`push`.
    """

    sent: list[dict[str, object]]
    closed: bool
    fail_writes: bool
    _inbound: "queue.Queue[bytes | BaseException]"
    _decoder: FrameDecoder
    _responder: Responder | None
    _condition: threading.Condition

    def __init__(self, responder: Responder | None = None) -> None:
        """Initialize the fake.

        :param responder: Called with every decoded outbound frame; returned
            frames are pushed back to the connection.
        """
        self.sent = []
        self.closed = False
        self.fail_writes = False
        self._inbound = queue.Queue()
        self._decoder = FrameDecoder()
        self._responder = responder
        self._condition = threading.Condition()

    def set_responder(self, responder: Responder | None) -> None:
        self._responder = responder

    def write(self, data: bytes) -> None:
        if self.fail_writes is True:
            raise BrokenPipeError("driver pipe closed")
        frames: list[dict[str, object]] = self._decoder.feed(data)
        with self._condition:
            self.sent.extend(frames)
            self._condition.notify_all()
        responder: Responder | None = self._responder
        if responder is None:
            return
        for frame in frames:
            replies: list[dict[str, object]] | None = responder(frame)
            for reply in replies or []:
                self.push(reply)

    def read_chunk(self) -> bytes:
        item: bytes | BaseException = self._inbound.get()
        if isinstance(item, BaseException) is True:
            raise item
        return item

    def close(self) -> None:
        self.closed = True
        self._inbound.put(b"")

    def push(self, message: Mapping[str, object]) -> None:
        """Queue one inbound message.

        :param message: Wire message.
        """
        self._inbound.put(encode_frame(dict(message)))

    def push_raw(self, data: bytes) -> None:
        """Queue raw inbound bytes, e.g. a partial frame.

        :param data: Bytes delivered as one chunk.
        """
        self._inbound.put(data)

    def push_split(self, message: Mapping[str, object], split_at: int) -> None:
        """Queue one message as two chunks.

        :param message: Wire message.
        :param split_at: Byte offset of the split.
        """
        frame: bytes = encode_frame(dict(message))
        self._inbound.put(frame[:split_at])
        self._inbound.put(frame[split_at:])

    def fail_reads(self, error: BaseException) -> None:
        self._inbound.put(error)

    def finish(self) -> None:
        """Signal end of stream."""
        self._inbound.put(b"")

    def wait_for_sent(
        self,
        predicate: Callable[[dict[str, object]], bool],
        timeout: float = 5.0,
    ) -> dict[str, object]:
        """Wait until an outbound frame matches ``predicate``.

        :param predicate: Frame filter.
        :param timeout: Seconds to wait.
        :returns: First matching frame.
        :raises AssertionError: If nothing matches in time.
        """
        with self._condition:
            found: list[dict[str, object]] = []

            def matched() -> bool:
                for frame in self.sent:
                    if predicate(frame) is True:
                        found.append(frame)
                        return True
                return False

            if self._condition.wait_for(matched, timeout=timeout) is False:
                raise AssertionError(f"No matching frame sent; sent so far: {self.sent!r}")
            return found[0]

    def wait_for_method(self, method: str, timeout: float = 5.0) -> dict[str, object]:
        return self.wait_for_sent(lambda frame: frame.get("method") == method, timeout=timeout)


class RecordingObject(ChannelOwner):
    """Proxy that records ``ping`` events from the moment it is constructed."""

    pings: list[object]

    def __init__(
        self,
        parent: ChannelOwner,
        object_type: str,
        guid: str,
        initializer: Mapping[str, object],
    ) -> None:
        super().__init__(parent, object_type, guid, initializer)
        self.pings = []
        self.channel.on("ping", self._on_ping)

    def _on_ping(self, params: Mapping[str, object]) -> None:
        self.pings.append(params.get("n"))
        self.emit("ping", params)
