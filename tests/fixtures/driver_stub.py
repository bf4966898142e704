"""Minimal driver executable speaking the pipe protocol on stdin/stdout.

It announces the entry objects, then answers every call with an empty
result until stdin closes.
"""

import json
import struct
import sys

LENGTH_PREFIX: struct.Struct = struct.Struct("<I")


def write_message(message: dict[str, object]) -> None:
    body: bytes = json.dumps(message, separators=(",", ":")).encode("utf-8")
    sys.stdout.buffer.write(LENGTH_PREFIX.pack(len(body)) + body)
    sys.stdout.buffer.flush()


def read_message() -> dict[str, object] | None:
    prefix: bytes = sys.stdin.buffer.read(LENGTH_PREFIX.size)
    if len(prefix) < LENGTH_PREFIX.size:
        return None
    (length,) = LENGTH_PREFIX.unpack(prefix)
    return json.loads(sys.stdin.buffer.read(length).decode("utf-8"))


def main() -> None:
    for name in ("chromium", "firefox", "webkit"):
        write_message(
            {
                "guid": "",
                "method": "__create__",
                "params": {"type": "BrowserType", "guid": f"browserType@{name}", "initializer": {"name": name}},
            }
        )
    write_message(
        {
            "guid": "",
            "method": "__create__",
            "params": {
                "type": "Playwright",
                "guid": "playwright",
                "initializer": {
                    "chromium": {"guid": "browserType@chromium"},
                    "firefox": {"guid": "browserType@firefox"},
                    "webkit": {"guid": "browserType@webkit"},
                    "deviceDescriptors": [],
                },
            },
        }
    )
    while True:
        message: dict[str, object] | None = read_message()
        if message is None:
            return
        write_message({"id": message["id"], "result": {}})


if __name__ == "__main__":
    main()
