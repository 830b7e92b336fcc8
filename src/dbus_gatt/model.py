"""
GATT attribute model.

Applications describe their peripheral with Service, Characteristic and
Descriptor objects. AttributeTree.build() validates the description and
turns it into an immutable tree of AttributeNode objects, each with a
D-Bus object path derived from its parent's path and its own name:

    /dbus_gatt/example                      (application root)
    /dbus_gatt/example/device               (Service "device")
    /dbus_gatt/example/device/test_char     (Characteristic "test_char")
    /dbus_gatt/example/device/test_char/cud (Descriptor "cud")
"""

import re
import weakref
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple, Union

from .exceptions import ConfigurationError, UnknownAttribute
from .values import AttributeValue, checked_encode

# BlueZ GattCharacteristic1 / GattDescriptor1 flag strings
FLAG_BROADCAST = "broadcast"
FLAG_READ = "read"
FLAG_WRITE_WITHOUT_RESPONSE = "write-without-response"
FLAG_WRITE = "write"
FLAG_NOTIFY = "notify"
FLAG_INDICATE = "indicate"
FLAG_AUTHENTICATED_SIGNED_WRITES = "authenticated-signed-writes"
FLAG_EXTENDED_PROPERTIES = "extended-properties"
FLAG_RELIABLE_WRITE = "reliable-write"
FLAG_WRITABLE_AUXILIARIES = "writable-auxiliaries"
FLAG_ENCRYPT_READ = "encrypt-read"
FLAG_ENCRYPT_WRITE = "encrypt-write"
FLAG_ENCRYPT_AUTHENTICATED_READ = "encrypt-authenticated-read"
FLAG_ENCRYPT_AUTHENTICATED_WRITE = "encrypt-authenticated-write"
FLAG_SECURE_READ = "secure-read"
FLAG_SECURE_WRITE = "secure-write"
FLAG_AUTHORIZE = "authorize"

READ_FLAGS = frozenset({
    FLAG_READ,
    FLAG_ENCRYPT_READ,
    FLAG_ENCRYPT_AUTHENTICATED_READ,
    FLAG_SECURE_READ,
})
WRITE_FLAGS = frozenset({
    FLAG_WRITE,
    FLAG_WRITE_WITHOUT_RESPONSE,
    FLAG_RELIABLE_WRITE,
    FLAG_AUTHENTICATED_SIGNED_WRITES,
    FLAG_ENCRYPT_WRITE,
    FLAG_ENCRYPT_AUTHENTICATED_WRITE,
    FLAG_SECURE_WRITE,
})
NOTIFY_FLAGS = frozenset({FLAG_NOTIFY, FLAG_INDICATE})
KNOWN_FLAGS = READ_FLAGS | WRITE_FLAGS | NOTIFY_FLAGS | frozenset({
    FLAG_BROADCAST,
    FLAG_EXTENDED_PROPERTIES,
    FLAG_WRITABLE_AUXILIARIES,
    FLAG_AUTHORIZE,
})

_UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")
_ROOT_PATH_RE = re.compile(r"^(/[A-Za-z0-9_]+)+$")

ReadAccessor = Callable[[], AttributeValue]
WriteAccessor = Callable[[bytes, int], Optional[int]]
Flags = Union[str, Iterable[str]]


class AttributeKind(Enum):
    SERVICE = "service"
    CHARACTERISTIC = "characteristic"
    DESCRIPTOR = "descriptor"


class AccessorKind(Enum):
    CALLBACKS = "callbacks"
    FIXED_VALUE = "fixed-value"


class Accessor(NamedTuple):
    """
    Read/write capability of an attribute.

    CALLBACKS accessors carry optional read and write functions.
    FIXED_VALUE accessors carry a value computed once at construction;
    `encoded` holds its wire form.
    """

    kind: AccessorKind
    read: Optional[ReadAccessor] = None
    write: Optional[WriteAccessor] = None
    value: Any = None
    encoded: Optional[bytes] = None


NO_ACCESSOR = Accessor(AccessorKind.CALLBACKS)


def _normalize_flags(flags: Flags) -> Tuple[str, ...]:
    if isinstance(flags, str):
        flags = [flags]
    result = []
    for flag in flags:
        if flag not in result:
            result.append(flag)
    return tuple(result)


class Descriptor:
    """Description of a GATT descriptor with optional accessor callbacks."""

    kind = AttributeKind.DESCRIPTOR

    def __init__(
        self,
        name: str,
        uuid: str,
        flags: Flags,
        read: Optional[ReadAccessor] = None,
        write: Optional[WriteAccessor] = None,
    ):
        self.name = name
        self.uuid = uuid
        self.flags = _normalize_flags(flags)
        self.accessor = Accessor(AccessorKind.CALLBACKS, read, write)

    @property
    def children(self) -> Tuple:
        return ()


class ReadOnlyValueDescriptor(Descriptor):
    """Descriptor whose value is fixed at construction."""

    def __init__(self, name: str, uuid: str, flags: Flags, value: AttributeValue):
        super().__init__(name, uuid, flags)
        self.accessor = Accessor(AccessorKind.FIXED_VALUE, value=value)


class Characteristic:
    """Description of a GATT characteristic and its descriptors."""

    kind = AttributeKind.CHARACTERISTIC

    def __init__(
        self,
        name: str,
        uuid: str,
        flags: Flags,
        read: Optional[ReadAccessor] = None,
        write: Optional[WriteAccessor] = None,
        *more_descriptors: Descriptor,
        descriptors: Iterable[Descriptor] = (),
    ):
        self.name = name
        self.uuid = uuid
        self.flags = _normalize_flags(flags)
        self.accessor = Accessor(AccessorKind.CALLBACKS, read, write)
        self.descriptors = list(more_descriptors) + list(descriptors)

    @property
    def children(self) -> List[Descriptor]:
        return self.descriptors


class ReadOnlyValueCharacteristic(Characteristic):
    """Characteristic whose value is fixed at construction."""

    def __init__(
        self,
        name: str,
        uuid: str,
        flags: Flags,
        value: AttributeValue,
        *more_descriptors: Descriptor,
        descriptors: Iterable[Descriptor] = (),
    ):
        super().__init__(name, uuid, flags, None, None, *more_descriptors, descriptors=descriptors)
        self.accessor = Accessor(AccessorKind.FIXED_VALUE, value=value)


class Service:
    """Description of a GATT service and its characteristics."""

    kind = AttributeKind.SERVICE

    def __init__(self, name: str, uuid: str, *characteristics: Characteristic, primary: bool = True):
        self.name = name
        self.uuid = uuid
        self.primary = primary
        self.flags = ()
        self.accessor = NO_ACCESSOR
        self.characteristics = list(characteristics)

    @property
    def children(self) -> List[Characteristic]:
        return self.characteristics


_CHILD_KIND = {
    AttributeKind.SERVICE: AttributeKind.CHARACTERISTIC,
    AttributeKind.CHARACTERISTIC: AttributeKind.DESCRIPTOR,
}


class AttributeNode:
    """
    A validated, immutable node of the attribute tree.

    The parent is held through a weak reference; the tree keeps every
    node alive through its services and their children.
    """

    __slots__ = (
        "kind", "name", "uuid", "flags", "path", "accessor", "primary",
        "children", "_parent", "__weakref__",
    )

    def __init__(
        self,
        kind: AttributeKind,
        name: str,
        uuid: str,
        flags: frozenset,
        path: str,
        accessor: Accessor,
        parent: Optional["AttributeNode"] = None,
        primary: bool = False,
    ):
        set_ = object.__setattr__
        set_(self, "kind", kind)
        set_(self, "name", name)
        set_(self, "uuid", uuid)
        set_(self, "flags", flags)
        set_(self, "path", path)
        set_(self, "accessor", accessor)
        set_(self, "primary", primary)
        set_(self, "children", ())
        set_(self, "_parent", weakref.ref(parent) if parent is not None else None)

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def _attach(self, children: Tuple["AttributeNode", ...]) -> None:
        object.__setattr__(self, "children", children)

    @property
    def parent(self) -> Optional["AttributeNode"]:
        return self._parent() if self._parent is not None else None

    @property
    def parent_path(self) -> Optional[str]:
        parent = self.parent
        return parent.path if parent is not None else None

    @property
    def readable(self) -> bool:
        return bool(self.flags & READ_FLAGS)

    @property
    def writable(self) -> bool:
        return bool(self.flags & WRITE_FLAGS)

    @property
    def notifiable(self) -> bool:
        return bool(self.flags & NOTIFY_FLAGS)

    def child(self, name: str) -> "AttributeNode":
        for node in self.children:
            if node.name == name:
                return node
        raise UnknownAttribute(f"{self.path} has no child named '{name}'")

    def __repr__(self) -> str:
        return f"<AttributeNode {self.kind.value} {self.path}>"


class AttributeTree:
    """Validated GATT tree with a flattened path index."""

    def __init__(self, root_path: str, services: Tuple[AttributeNode, ...], index: Dict[str, AttributeNode]):
        self.root_path = root_path
        self.services = services
        self._index = index

    @classmethod
    def build(cls, root_path: str, services: Iterable[Service]) -> "AttributeTree":
        """
        Validate service descriptions and build the tree.

        Raises ConfigurationError on duplicate sibling names, malformed
        UUIDs or names, unknown flags, or flags that are not backed by
        the matching accessor. Nothing is returned on failure.
        """
        if not isinstance(root_path, str) or not _ROOT_PATH_RE.match(root_path):
            raise ConfigurationError(f"Invalid application object path: {root_path!r}")

        services = list(services)
        if not services:
            raise ConfigurationError("At least one service is required")

        index: Dict[str, AttributeNode] = {}
        nodes = cls._build_children(root_path, None, services, AttributeKind.SERVICE, index)
        return cls(root_path, nodes, index)

    @classmethod
    def _build_children(
        cls,
        parent_path: str,
        parent: Optional[AttributeNode],
        descriptions: List[Any],
        expected_kind: AttributeKind,
        index: Dict[str, AttributeNode],
    ) -> Tuple[AttributeNode, ...]:
        seen = set()
        nodes = []
        for description in descriptions:
            if getattr(description, "kind", None) is not expected_kind:
                raise ConfigurationError(
                    f"Expected a {expected_kind.value} under {parent_path}, got {description!r}"
                )
            if not isinstance(description.name, str) or not _NAME_RE.match(description.name):
                raise ConfigurationError(f"Invalid attribute name under {parent_path}: {description.name!r}")
            if description.name in seen:
                raise ConfigurationError(f"Duplicate attribute name '{description.name}' under {parent_path}")
            seen.add(description.name)

            path = f"{parent_path}/{description.name}"
            node = AttributeNode(
                description.kind,
                description.name,
                _check_uuid(description.uuid, path),
                _check_flags(description, path),
                path,
                _check_accessor(description, path),
                parent=parent,
                primary=getattr(description, "primary", False),
            )
            index[path] = node
            child_kind = _CHILD_KIND.get(description.kind)
            if child_kind is not None:
                node._attach(cls._build_children(path, node, list(description.children), child_kind, index))
            nodes.append(node)
        return tuple(nodes)

    def __getitem__(self, path: str) -> AttributeNode:
        try:
            return self._index[path]
        except KeyError:
            raise UnknownAttribute(f"No attribute at {path}") from None

    def __contains__(self, path: str) -> bool:
        return path in self._index

    def __iter__(self) -> Iterator[AttributeNode]:
        for service in self.services:
            yield service
            for char in service.children:
                yield char
                yield from char.children

    def __len__(self) -> int:
        return len(self._index)

    def get(self, path: str) -> Optional[AttributeNode]:
        return self._index.get(path)

    def paths(self) -> List[str]:
        return [node.path for node in self]

    def resolve(self, key: str) -> AttributeNode:
        """
        Find a node by absolute path, path relative to the root, or by
        name when that name is unique in the tree.
        """
        if key.startswith("/"):
            return self[key]
        node = self._index.get(f"{self.root_path}/{key}")
        if node is not None:
            return node
        matches = [node for node in self._index.values() if node.name == key]
        if len(matches) == 1:
            return matches[0]
        if matches:
            raise UnknownAttribute(f"Attribute name '{key}' is ambiguous, use its path")
        raise UnknownAttribute(f"No attribute named '{key}'")


def _check_uuid(uuid: Any, path: str) -> str:
    if not isinstance(uuid, str) or not _UUID_RE.match(uuid):
        raise ConfigurationError(f"{path}: malformed UUID {uuid!r}")
    return uuid.lower()


def _check_flags(description: Any, path: str) -> frozenset:
    flags = frozenset(description.flags)
    if description.kind is AttributeKind.SERVICE:
        return flags
    unknown = flags - KNOWN_FLAGS
    if unknown:
        raise ConfigurationError(f"{path}: unknown flags {sorted(unknown)}")
    if description.kind is AttributeKind.DESCRIPTOR and flags & NOTIFY_FLAGS:
        raise ConfigurationError(f"{path}: descriptors cannot notify")
    return flags


def _check_accessor(description: Any, path: str) -> Accessor:
    accessor = description.accessor
    flags = set(description.flags)

    if accessor.kind is AccessorKind.FIXED_VALUE:
        if flags & WRITE_FLAGS:
            raise ConfigurationError(f"{path}: read-only value attributes cannot be writable")
        encoded = checked_encode(accessor.value, path)
        return accessor._replace(encoded=encoded)

    if accessor.read is not None and not callable(accessor.read):
        raise ConfigurationError(f"{path}: read accessor is not callable")
    if accessor.write is not None and not callable(accessor.write):
        raise ConfigurationError(f"{path}: write accessor is not callable")
    if flags & READ_FLAGS and accessor.read is None:
        raise ConfigurationError(f"{path}: flags {sorted(flags & READ_FLAGS)} need a read accessor")
    if flags & WRITE_FLAGS and accessor.write is None:
        raise ConfigurationError(f"{path}: flags {sorted(flags & WRITE_FLAGS)} need a write accessor")
    return accessor
