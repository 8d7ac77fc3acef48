"""ToolRegistry: the immutable tool set handed to one loop run."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from agentloop.exceptions import RegistryError
from agentloop.toolkit.models import ToolDescriptor


class ToolRegistry:
    """Immutable mapping of tool name to descriptor.

    Narrowing or extending a registry returns a new registry; the original
    is never modified, so a registry can be shared by concurrent runs.

    Usage::

        registry = ToolRegistry([read_file, write_file, send_email])
        sub_registry = registry.without("send_email")
    """

    def __init__(self, descriptors: Iterable[ToolDescriptor] = ()) -> None:
        tools: dict[str, ToolDescriptor] = {}
        for descriptor in descriptors:
            if not isinstance(descriptor, ToolDescriptor):
                raise RegistryError(
                    f"Expected ToolDescriptor, got {type(descriptor).__name__}"
                )
            if descriptor.name in tools:
                raise RegistryError(f"Duplicate tool name: {descriptor.name}")
            tools[descriptor.name] = descriptor
        self._tools = tools

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def __repr__(self) -> str:
        return f"ToolRegistry({self.names()!r})"

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def descriptors(self) -> tuple[ToolDescriptor, ...]:
        return tuple(self._tools.values())

    def requires_gating(self, name: str) -> bool:
        descriptor = self._tools.get(name)
        return descriptor is not None and descriptor.sensitive

    def without(self, *names: str) -> ToolRegistry:
        """Return a registry lacking the named tools (unknown names are ignored)."""
        dropped = set(names)
        return ToolRegistry(d for d in self._tools.values() if d.name not in dropped)

    def only(self, *names: str) -> ToolRegistry:
        """Return a registry restricted to the named tools.

        Raises:
            RegistryError: If a named tool is not registered.
        """
        unknown = [n for n in names if n not in self._tools]
        if unknown:
            raise RegistryError(f"Unknown tool(s): {', '.join(unknown)}")
        return ToolRegistry(self._tools[n] for n in names)

    def extended(self, *descriptors: ToolDescriptor) -> ToolRegistry:
        """Return a registry with additional tools appended."""
        return ToolRegistry([*self._tools.values(), *descriptors])
