"""
Adapter registry.

Holds the adapters known to this installation, keyed by source name, and
resolves ``--source`` selections against them.
"""

from collections.abc import Iterable, Iterator

import structlog

from convosync.adapters.base import SourceAdapter
from convosync.exceptions import UnknownSourceError


class AdapterRegistry:
    """
    Registry of source adapters in registration order.

    Example:
        >>> registry = AdapterRegistry()
        >>> registry.register(ClaudeCodeAdapter(root=Path("~/.claude").expanduser()))
        >>> registry.select(["claude-code"])
    """

    def __init__(
        self,
        adapters: Iterable[SourceAdapter] = (),
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._adapters: dict[str, SourceAdapter] = {}
        self._logger = logger or structlog.get_logger(__name__)
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: SourceAdapter) -> None:
        """
        Register an adapter, replacing any previous adapter with the same name.
        """
        if adapter.name in self._adapters:
            self._logger.warning("adapter_replaced", source=adapter.name)
        self._adapters[adapter.name] = adapter
        self._logger.debug("adapter_registered", source=adapter.name, adapter=type(adapter).__name__)

    def get(self, name: str) -> SourceAdapter:
        try:
            return self._adapters[name]
        except KeyError:
            raise UnknownSourceError(name, self.names()) from None

    def names(self) -> list[str]:
        return list(self._adapters)

    def select(self, names: Iterable[str] | None = None) -> list[SourceAdapter]:
        """
        Resolve a source selection.

        Args:
            names: Source names to keep, or None for every registered adapter.

        Raises:
            UnknownSourceError: If a name has no registered adapter.
        """
        if names is None:
            return list(self._adapters.values())
        return [self.get(name) for name in dict.fromkeys(names)]

    def __iter__(self) -> Iterator[SourceAdapter]:
        return iter(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)
