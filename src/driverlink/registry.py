"""Arena of live remote object proxies and their ownership tree."""

import concurrent.futures
import logging
import threading
from collections.abc import Callable
from collections.abc import Mapping

from driverlink.channel import ROOT_GUID
from driverlink.channel import ChannelOwner
from driverlink.errors import DriverLinkProtocolError
from driverlink.errors import ObjectNotFoundError

logger = logging.getLogger(__name__)

ObjectFactory = Callable[[ChannelOwner, str, str, Mapping[str, object]], ChannelOwner]


class ObjectRegistry:
    """Map guids to proxies and track parent/child links.

    The dispatch loop is the only mutator; readers on other threads go
    through the same lock. Proxies never own their children: the tree lives
    here as guid links, so disposal is a plain post-order walk.
    """

    _lock: threading.RLock
    _factories: dict[str, ObjectFactory]
    _objects_by_guid: dict[str, ChannelOwner]
    _parent_by_guid: dict[str, str]
    _children_by_guid: dict[str, dict[str, None]]
    _type_waiters: dict[str, list[concurrent.futures.Future]]
    _root: ChannelOwner

    def __init__(self, root: ChannelOwner, factories: Mapping[str, ObjectFactory]) -> None:
        """Initialize a registry holding only ``root``.

        :param root: Implicit root proxy.
        :param factories: Constructors keyed by remote type tag.
        """
        self._lock = threading.RLock()
        self._factories = dict(factories)
        self._objects_by_guid = {root.guid: root}
        self._parent_by_guid = {}
        self._children_by_guid = {root.guid: {}}
        self._type_waiters = {}
        self._root = root

    @property
    def root(self) -> ChannelOwner:
        """Return the implicit root proxy.

        :returns: Root proxy.
        """
        return self._root

    def __len__(self) -> int:
        """Return the number of live proxies, root excluded.

        :returns: Proxy count.
        """
        with self._lock:
            return len(self._objects_by_guid) - 1

    def register_factory(self, object_type: str, factory: ObjectFactory) -> None:
        """Register or replace the constructor for ``object_type``.

        :param object_type: Remote type tag.
        :param factory: Proxy constructor.
        """
        with self._lock:
            self._factories[object_type] = factory

    def contains(self, guid: str) -> bool:
        """Report whether ``guid`` names a live proxy.

        :param guid: Remote object guid.
        :returns: ``True`` when present.
        """
        with self._lock:
            return guid in self._objects_by_guid

    def get(self, guid: str) -> ChannelOwner | None:
        """Return the proxy for ``guid`` or ``None``.

        :param guid: Remote object guid.
        :returns: Proxy or ``None``.
        """
        with self._lock:
            return self._objects_by_guid.get(guid)

    def lookup(self, guid: str) -> ChannelOwner:
        """Return the proxy for ``guid``.

        :param guid: Remote object guid.
        :returns: Proxy.
        :raises ObjectNotFoundError: If ``guid`` is unknown or disposed.
        """
        with self._lock:
            owner: ChannelOwner | None = self._objects_by_guid.get(guid)
        if owner is None:
            raise ObjectNotFoundError(guid)
        return owner

    def children(self, guid: str) -> list[ChannelOwner]:
        """Return the live children of ``guid`` in creation order.

        :param guid: Remote object guid.
        :returns: Child proxies, empty for unknown guids.
        """
        with self._lock:
            child_guids: dict[str, None] = self._children_by_guid.get(guid, {})
            return [self._objects_by_guid[child_guid] for child_guid in child_guids]

    def create(
        self,
        parent_guid: str,
        object_type: str,
        guid: str,
        initializer: Mapping[str, object],
    ) -> ChannelOwner:
        """Construct, insert, and link the proxy announced by a creation message.

        :param parent_guid: Guid of the owning object.
        :param object_type: Remote type tag.
        :param guid: Guid of the new object.
        :param initializer: Creation attributes.
        :returns: New proxy.
        :raises DriverLinkProtocolError: On duplicate guid, unknown parent, or
            unknown type tag.
        """
        with self._lock:
            if guid in self._objects_by_guid:
                raise DriverLinkProtocolError(f"Duplicate guid in creation message: {guid!r}")

            parent: ChannelOwner | None = self._objects_by_guid.get(parent_guid)
            if parent is None:
                raise DriverLinkProtocolError(
                    f"Creation of {guid!r} references unknown parent {parent_guid!r}"
                )

            factory: ObjectFactory | None = self._factories.get(object_type)
            if factory is None:
                raise DriverLinkProtocolError(f"Unknown remote object type: {object_type!r}")

            owner: ChannelOwner = factory(parent, object_type, guid, initializer)
            self._objects_by_guid[guid] = owner
            self._parent_by_guid[guid] = parent_guid
            self._children_by_guid[guid] = {}
            self._children_by_guid[parent_guid][guid] = None
            waiters: list[concurrent.futures.Future] = self._type_waiters.pop(object_type, [])

        for waiter in waiters:
            if waiter.done() is False:
                waiter.set_result(owner)
        return owner

    def dispose(self, guid: str) -> list[ChannelOwner]:
        """Remove ``guid`` and all of its descendants.

        Unknown guids are ignored so duplicate notifications are harmless.
        The caller runs each removed proxy's teardown hook.

        :param guid: Remote object guid.
        :returns: Removed proxies, children before their parents.
        :raises DriverLinkProtocolError: If ``guid`` is the root.
        """
        if guid == ROOT_GUID:
            raise DriverLinkProtocolError("The root object cannot be disposed")

        with self._lock:
            if guid not in self._objects_by_guid:
                logger.debug("Ignoring disposal of unknown guid %r", guid)
                return []

            removed: list[ChannelOwner] = []
            self._collect_post_order(guid, removed)

            parent_guid: str | None = self._parent_by_guid.get(guid)
            if parent_guid is not None:
                siblings: dict[str, None] | None = self._children_by_guid.get(parent_guid)
                if siblings is not None:
                    siblings.pop(guid, None)

            for owner in removed:
                self._objects_by_guid.pop(owner.guid, None)
                self._parent_by_guid.pop(owner.guid, None)
                self._children_by_guid.pop(owner.guid, None)
            return removed

    def _collect_post_order(self, guid: str, removed: list[ChannelOwner]) -> None:
        """Append the subtree rooted at ``guid`` to ``removed``, children first.

        :param guid: Subtree root guid.
        :param removed: Output list.
        """
        stack: list[tuple[str, bool]] = [(guid, False)]
        while len(stack) > 0:
            current, expanded = stack.pop()
            if expanded is True:
                removed.append(self._objects_by_guid[current])
                continue
            stack.append((current, True))
            child_guids: list[str] = list(self._children_by_guid.get(current, {}))
            for child_guid in reversed(child_guids):
                stack.append((child_guid, False))

    def wait_for_type(self, object_type: str) -> concurrent.futures.Future:
        """Return a future resolved with the first live proxy of ``object_type``.

        Resolves immediately when such a proxy already exists.

        :param object_type: Remote type tag.
        :returns: Future of the proxy.
        """
        future: concurrent.futures.Future = concurrent.futures.Future()
        with self._lock:
            for owner in self._objects_by_guid.values():
                if owner.object_type == object_type:
                    future.set_result(owner)
                    return future
            self._type_waiters.setdefault(object_type, []).append(future)
        return future

    def fail_type_waiters(self, error: BaseException) -> None:
        """Fail every outstanding :meth:`wait_for_type` future with ``error``.

        :param error: Error to deliver.
        """
        with self._lock:
            waiters: list[concurrent.futures.Future] = [
                waiter for waiter_list in self._type_waiters.values() for waiter in waiter_list
            ]
            self._type_waiters.clear()
        for waiter in waiters:
            if waiter.done() is False:
                waiter.set_exception(error)
