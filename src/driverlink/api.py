"""User-facing entrypoints for driverlink."""

from collections.abc import Mapping
from collections.abc import Sequence

from driverlink.connection import Connection
from driverlink.errors import DriverLinkError
from driverlink.proxies import DEFAULT_OBJECT_FACTORIES
from driverlink.proxies import Playwright
from driverlink.registry import ObjectFactory
from driverlink.timeout_settings import DEFAULT_TIMEOUT_SECONDS
from driverlink.transport import PipeTransport
from driverlink.transport import resolve_driver_executable

ROOT_OBJECT_TYPE: str = "Playwright"


def launch_driver(
    executable: str | None = None,
    args: Sequence[str] = ("run-driver",),
) -> PipeTransport:
    """Start the driver subprocess.

    :param executable: Driver executable; defaults to ``DRIVERLINK_DRIVER_PATH``.
    :param args: Arguments selecting the driver's pipe mode.
    :returns: Transport attached to the driver's stdin/stdout.
    :raises ValueError: If no executable is configured.
    """
    command: list[str] = [resolve_driver_executable(executable), *args]
    return PipeTransport.spawn(command)


def run(
    executable: str | None = None,
    object_factories: Mapping[str, ObjectFactory] | None = None,
    timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
) -> Playwright:
    """Launch the driver and return its entry object.

    :param executable: Driver executable; defaults to ``DRIVERLINK_DRIVER_PATH``.
    :param object_factories: Extra or replacement proxy constructors merged
        over the built-in ones.
    :param timeout: Seconds to wait for the entry object, ``None`` for no limit.
    :returns: Entry object; call ``stop()`` on it when done.
    :raises ValueError: If no executable is configured.
    :raises DriverLinkError: If the driver fails before announcing itself.
    """
    factories: dict[str, ObjectFactory] = dict(DEFAULT_OBJECT_FACTORIES)
    if object_factories is not None:
        factories.update(object_factories)

    connection: Connection = Connection(launch_driver(executable), object_factories=factories)
    try:
        connection.start()
        return connection.call_on_object_with_known_name(ROOT_OBJECT_TYPE, timeout=timeout)
    except DriverLinkError:
        connection.stop()
        raise
