from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from sitechat.tool import Tool


class ToolRegistry:
    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name!r}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    @property
    def names(self) -> list[str]:
        return sorted(self._tools)

    def enabled(self, names: Iterable[str]) -> dict[str, Tool]:
        """Return the registered tools among ``names``; unknown names are skipped."""
        selected: dict[str, Tool] = {}
        for name in names:
            tool = self._tools.get(name)
            if tool is None:
                logger.warning(f"Requested tool is not registered: {name!r}")
                continue
            selected[name] = tool
        return selected
