"""Public package API for driverlink."""

from driverlink.api import launch_driver
from driverlink.api import run
from driverlink.channel import Channel
from driverlink.channel import ChannelOwner
from driverlink.connection import Connection
from driverlink.errors import ClosedBeforeEventError
from driverlink.errors import ConnectionClosedError
from driverlink.errors import DriverLinkError
from driverlink.errors import DriverLinkProtocolError
from driverlink.errors import DriverLinkRemoteError
from driverlink.errors import DriverLinkTimeoutError
from driverlink.errors import DriverLinkTransportError
from driverlink.errors import ObjectNotFoundError
from driverlink.events import detached
from driverlink.proxies import DEFAULT_OBJECT_FACTORIES
from driverlink.proxies import Playwright
from driverlink.transport import PipeTransport
from driverlink.transport import Transport
from driverlink.waiting import expect_event
from driverlink.waiting import wait_for_event

__all__: list[str] = [
    "launch_driver",
    "run",
    "detached",
    "expect_event",
    "wait_for_event",
    "Channel",
    "ChannelOwner",
    "Connection",
    "DEFAULT_OBJECT_FACTORIES",
    "PipeTransport",
    "Playwright",
    "Transport",
    "ClosedBeforeEventError",
    "ConnectionClosedError",
    "DriverLinkError",
    "DriverLinkProtocolError",
    "DriverLinkRemoteError",
    "DriverLinkTimeoutError",
    "DriverLinkTransportError",
    "ObjectNotFoundError",
]
