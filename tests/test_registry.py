"""Tests for the object registry and its ownership tree."""

import concurrent.futures
from collections.abc import Iterator

import pytest

from driverlink.channel import ChannelOwner
from driverlink.connection import Connection
from driverlink.errors import DriverLinkProtocolError
from driverlink.errors import ObjectNotFoundError
from driverlink.registry import ObjectRegistry
from tests.fixtures.fake_driver import FakeDriverTransport
from tests.fixtures.fake_driver import RecordingObject


@pytest.fixture()
def registry() -> Iterator[ObjectRegistry]:
    """Provide the registry of an idle connection.

    :yields: Registry with ``Node`` and ``Recorder`` factories.
    """
    connection: Connection = Connection(
        FakeDriverTransport(),
        object_factories={"Node": ChannelOwner, "Recorder": RecordingObject},
    )
    try:
        yield connection.registry
    finally:
        connection.stop()


def _build_tree(registry: ObjectRegistry) -> None:
    """Create ``a`` with children ``b`` (child ``d``) and ``c``."""
    registry.create("", "Node", "a", {})
    registry.create("a", "Node", "b", {})
    registry.create("a", "Node", "c", {})
    registry.create("b", "Node", "d", {})


def test_create_links_children_in_creation_order(registry: ObjectRegistry) -> None:
    _build_tree(registry)
    parent: ChannelOwner = registry.lookup("a")
    child_guids: list[str] = [child.guid for child in parent.children]
    assert child_guids == ["b", "c"]
    assert registry.lookup("d").parent is registry.lookup("b")
    assert registry.lookup("a").parent is registry.root
    assert len(registry) == 4


def test_create_uses_factory_for_type(registry: ObjectRegistry) -> None:
    owner: ChannelOwner = registry.create("", "Recorder", "rec", {"n": 1})
    assert isinstance(owner, RecordingObject) is True
    assert owner.object_type == "Recorder"
    assert owner.initializer["n"] == 1


def test_initializer_is_read_only(registry: ObjectRegistry) -> None:
    owner: ChannelOwner = registry.create("", "Node", "a", {"k": "v"})
    with pytest.raises(TypeError):
        owner.initializer["k"] = "changed"


@pytest.mark.parametrize(
    ("parent_guid", "object_type", "guid"),
    [
        ("", "Node", "a"),
        ("missing", "Node", "z"),
        ("", "Unknown", "z"),
    ],
)
def test_create_rejects_invalid_creations(
    registry: ObjectRegistry,
    parent_guid: str,
    object_type: str,
    guid: str,
) -> None:
    """Duplicate guid, unknown parent, and unknown type are protocol errors."""
    registry.create("", "Node", "a", {})
    with pytest.raises(DriverLinkProtocolError):
        registry.create(parent_guid, object_type, guid, {})
    assert len(registry) == 1


def test_dispose_removes_subtree_children_first(registry: ObjectRegistry) -> None:
    """Disposing ``a`` removes ``d``, ``b``, ``c``, then ``a``."""
    _build_tree(registry)
    removed: list[ChannelOwner] = registry.dispose("a")
    assert [owner.guid for owner in removed] == ["d", "b", "c", "a"]
    for guid in ("a", "b", "c", "d"):
        assert registry.contains(guid) is False
        assert registry.get(guid) is None
    assert registry.root.children == []
    assert len(registry) == 0


def test_dispose_of_inner_node_unlinks_from_parent(registry: ObjectRegistry) -> None:
    _build_tree(registry)
    removed: list[ChannelOwner] = registry.dispose("b")
    assert [owner.guid for owner in removed] == ["d", "b"]
    assert [child.guid for child in registry.lookup("a").children] == ["c"]


def test_dispose_is_idempotent(registry: ObjectRegistry) -> None:
    _build_tree(registry)
    registry.dispose("c")
    assert registry.dispose("c") == []
    assert registry.dispose("never-existed") == []
    assert len(registry) == 3


def test_dispose_of_root_is_rejected(registry: ObjectRegistry) -> None:
    with pytest.raises(DriverLinkProtocolError):
        registry.dispose("")


def test_lookup_of_unknown_guid_raises(registry: ObjectRegistry) -> None:
    with pytest.raises(ObjectNotFoundError) as exc_info:
        registry.lookup("ghost")
    assert exc_info.value.guid == "ghost"


def test_wait_for_type_resolves_on_creation(registry: ObjectRegistry) -> None:
    """Waiters resolve on creation, or immediately when a proxy exists."""
    pending: concurrent.futures.Future = registry.wait_for_type("Recorder")
    assert pending.done() is False
    owner: ChannelOwner = registry.create("", "Recorder", "rec", {})
    assert pending.result(timeout=1) is owner

    existing: concurrent.futures.Future = registry.wait_for_type("Recorder")
    assert existing.result(timeout=0) is owner


def test_fail_type_waiters_delivers_error(registry: ObjectRegistry) -> None:
    pending: concurrent.futures.Future = registry.wait_for_type("Never")
    registry.fail_type_waiters(RuntimeError("gone"))
    with pytest.raises(RuntimeError):
        pending.result(timeout=1)
