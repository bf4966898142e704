"""Wire message types and length-prefixed JSON framing."""

import json
import struct
from collections.abc import Callable
from collections.abc import Iterator
from dataclasses import dataclass
from dataclasses import field

from driverlink.errors import DriverLinkProtocolError

CREATE_METHOD: str = "__create__"
DISPOSE_METHOD: str = "__dispose__"
_LENGTH_PREFIX: struct.Struct = struct.Struct("<I")
MAX_FRAME_BYTES: int = 256 * 1024 * 1024


@dataclass(frozen=True)
class ErrorPayload:
    """Error details attached to a failed method result."""

    name: str
    message: str
    stack: str = ""


@dataclass(frozen=True)
class CreateMessage:
    """Server notification that a new remote object exists."""

    parent_guid: str
    type: str
    guid: str
    initializer: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class DisposeMessage:
    """Server notification that a remote object and its subtree are gone."""

    guid: str


@dataclass(frozen=True)
class MethodCall:
    """Client request invoking ``method`` on the object ``guid``."""

    id: int
    guid: str
    method: str
    params: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class MethodResponse:
    """Successful result for one method call."""

    id: int
    result: object = None


@dataclass(frozen=True)
class MethodError:
    """Failed result for one method call."""

    id: int
    error: ErrorPayload


@dataclass(frozen=True)
class EventMessage:
    """Server-pushed event addressed to one remote object."""

    guid: str
    method: str
    params: dict[str, object] = field(default_factory=dict)


Message = CreateMessage | DisposeMessage | MethodCall | MethodResponse | MethodError | EventMessage


def encode_frame(payload: dict[str, object]) -> bytes:
    """Serialize one JSON object into a length-prefixed frame.

    :param payload: JSON-compatible object.
    :returns: Frame bytes.
    """
    body: bytes = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return _LENGTH_PREFIX.pack(len(body)) + body


class FrameDecoder:
    """Reassemble length-prefixed JSON frames from arbitrary stream chunks."""

    _buffer: bytearray
    _max_frame_bytes: int

    def __init__(self, max_frame_bytes: int = MAX_FRAME_BYTES) -> None:
        """Initialize an empty decoder.

        :param max_frame_bytes: Largest frame body accepted, in bytes.
        """
        self._buffer = bytearray()
        self._max_frame_bytes = max_frame_bytes

    @property
    def pending_bytes(self) -> int:
        """Return the number of buffered bytes not yet forming a full frame.

        :returns: Buffered byte count.
        """
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[dict[str, object]]:
        """Append ``chunk`` and return every frame it completes, in order.

        :param chunk: Raw bytes read from the stream.
        :returns: Decoded JSON objects.
        :raises DriverLinkProtocolError: If a frame is not a JSON object, or
            declares a length above the frame size limit.
        """
        self._buffer.extend(chunk)
        frames: list[dict[str, object]] = []
        prefix_size: int = _LENGTH_PREFIX.size
        while len(self._buffer) >= prefix_size:
            (length,) = _LENGTH_PREFIX.unpack_from(self._buffer, 0)
            if length > self._max_frame_bytes:
                raise DriverLinkProtocolError(
                    f"Frame length {length} exceeds the limit of {self._max_frame_bytes} bytes"
                )
            frame_end: int = prefix_size + length
            if len(self._buffer) < frame_end:
                break
            body: bytes = bytes(self._buffer[prefix_size:frame_end])
            del self._buffer[:frame_end]
            frames.append(_decode_body(body))
        return frames


def _decode_body(body: bytes) -> dict[str, object]:
    """Parse one frame body.

    :param body: UTF-8 JSON bytes.
    :returns: Decoded JSON object.
    :raises DriverLinkProtocolError: If the body is not a JSON object.
    """
    try:
        decoded: object = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DriverLinkProtocolError("Frame body is not valid UTF-8 JSON") from exc
    if isinstance(decoded, dict) is False:
        raise DriverLinkProtocolError("Frame body must be a JSON object")
    return decoded


def _require_str_field(raw: dict[str, object], key: str) -> str:
    """Extract and validate a string field.

    :param raw: Wire message.
    :param key: Field name.
    :returns: Field value.
    :raises DriverLinkProtocolError: If the field is missing or not a string.
    """
    value: object = raw.get(key)
    if isinstance(value, str) is False:
        raise DriverLinkProtocolError(f"{key} must be a string")
    return value


def _require_id_field(raw: dict[str, object]) -> int:
    """Extract and validate the request id.

    :param raw: Wire message.
    :returns: Request id.
    :raises DriverLinkProtocolError: If ``id`` is missing or not an integer.
    """
    value: object = raw.get("id")
    if isinstance(value, bool) is True or isinstance(value, int) is False:
        raise DriverLinkProtocolError("id must be an integer")
    return value


def _optional_dict_field(raw: dict[str, object], key: str) -> dict[str, object]:
    """Extract an optional object field, defaulting to an empty dict.

    :param raw: Wire message.
    :param key: Field name.
    :returns: Field value.
    :raises DriverLinkProtocolError: If the field is present but not an object.
    """
    value: object = raw.get(key)
    if value is None:
        return {}
    if isinstance(value, dict) is False:
        raise DriverLinkProtocolError(f"{key} must be an object")
    return value


def _parse_error_payload(raw_error: object) -> ErrorPayload:
    """Parse the ``error`` field of a failed result.

    The driver nests the details one level deep (``{"error": {...}}``); a
    flat object is accepted as well.

    :param raw_error: Raw ``error`` field.
    :returns: Parsed error payload.
    :raises DriverLinkProtocolError: If the field is not an object.
    """
    if isinstance(raw_error, dict) is False:
        raise DriverLinkProtocolError("error must be an object")
    details: object = raw_error.get("error", raw_error)
    if isinstance(details, dict) is False:
        raise DriverLinkProtocolError("error.error must be an object")

    name: object = details.get("name", "Error")
    message: object = details.get("message", "")
    stack: object = details.get("stack", "")
    return ErrorPayload(
        name=name if isinstance(name, str) else "Error",
        message=message if isinstance(message, str) else str(message),
        stack=stack if isinstance(stack, str) else "",
    )


def parse_message(raw: dict[str, object]) -> Message:
    """Classify one decoded frame into a typed message.

    :param raw: Decoded JSON object.
    :returns: Typed message.
    :raises DriverLinkProtocolError: If the frame matches no message shape.
    """
    if "id" in raw:
        request_id: int = _require_id_field(raw)
        if "method" in raw:
            return MethodCall(
                id=request_id,
                guid=_require_str_field(raw, "guid"),
                method=_require_str_field(raw, "method"),
                params=_optional_dict_field(raw, "params"),
            )
        if raw.get("error") is not None:
            return MethodError(id=request_id, error=_parse_error_payload(raw["error"]))
        return MethodResponse(id=request_id, result=raw.get("result"))

    guid: str = _require_str_field(raw, "guid")
    method: str = _require_str_field(raw, "method")
    params: dict[str, object] = _optional_dict_field(raw, "params")

    if method == CREATE_METHOD:
        return CreateMessage(
            parent_guid=guid,
            type=_require_str_field(params, "type"),
            guid=_require_str_field(params, "guid"),
            initializer=_optional_dict_field(params, "initializer"),
        )
    if method == DISPOSE_METHOD:
        return DisposeMessage(guid=guid)
    return EventMessage(guid=guid, method=method, params=params)


def message_to_wire(message: Message) -> dict[str, object]:
    """Build the wire object for one typed message.

    :param message: Typed message.
    :returns: JSON-compatible object.
    :raises TypeError: If ``message`` is not a known message type.
    """
    if isinstance(message, MethodCall) is True:
        return {
            "id": message.id,
            "guid": message.guid,
            "method": message.method,
            "params": message.params,
        }
    if isinstance(message, MethodResponse) is True:
        return {"id": message.id, "result": message.result}
    if isinstance(message, MethodError) is True:
        return {
            "id": message.id,
            "error": {
                "error": {
                    "name": message.error.name,
                    "message": message.error.message,
                    "stack": message.error.stack,
                },
            },
        }
    if isinstance(message, CreateMessage) is True:
        return {
            "guid": message.parent_guid,
            "method": CREATE_METHOD,
            "params": {
                "type": message.type,
                "guid": message.guid,
                "initializer": message.initializer,
            },
        }
    if isinstance(message, DisposeMessage) is True:
        return {"guid": message.guid, "method": DISPOSE_METHOD}
    if isinstance(message, EventMessage) is True:
        return {"guid": message.guid, "method": message.method, "params": message.params}
    raise TypeError(f"Unsupported message type: {type(message).__name__}")


def encode_message(message: Message) -> bytes:
    """Encode one typed message into a frame.

    :param message: Typed message.
    :returns: Frame bytes.
    """
    return encode_frame(message_to_wire(message))


def decode_messages(read_chunk: Callable[[], bytes]) -> Iterator[Message]:
    """Lazily decode typed messages until ``read_chunk`` reports end of stream.

    :param read_chunk: Callable returning the next chunk, ``b""`` at EOF.
    :returns: Iterator over messages in arrival order.
    :raises DriverLinkProtocolError: If the stream carries a malformed frame,
        or ends in the middle of one.
    """
    decoder: FrameDecoder = FrameDecoder()
    while True:
        chunk: bytes = read_chunk()
        if len(chunk) == 0:
            if decoder.pending_bytes > 0:
                raise DriverLinkProtocolError(
                    f"Stream closed with {decoder.pending_bytes} bytes of an incomplete frame"
                )
            return
        for raw in decoder.feed(chunk):
            yield parse_message(raw)
