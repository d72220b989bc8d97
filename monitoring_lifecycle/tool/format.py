"""Library for formatting output."""

from abc import ABC, abstractmethod
from typing import Generator, Any

import sys
from typing import TextIO
import yaml
import json


PADDING = 4


def column_format_string(rows: list[list[str]]) -> str:
    """Produce a format string based on max width of columns."""
    widths = [0] * len(rows[0])
    for row in rows:
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(str(value)))
    return "".join([f"{{:{w+PADDING}}}" for w in widths])


class PrintFormatter:
    """A formatter that prints human readable console columns."""

    def __init__(self, keys: list[str] | None = None):
        """Initialize the PrintFormatter with optional keys to print."""
        self._keys = keys

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Format the data objects."""
        if not data:
            return
        keys = self._keys if self._keys is not None else list(data[0])
        rows = [[col.upper() for col in keys]]
        for row in data:
            rows.append(["" if row.get(key) is None else str(row[key]) for key in keys])
        format_string = column_format_string(rows)
        for row in rows:
            yield format_string.format(*row).rstrip()

    def print(self, data: list[dict[str, Any]], file: TextIO = sys.stdout) -> None:
        """Output the data objects."""
        for result in self.format(data):
            print(result, file=file)


class StructFormatter(ABC):
    """A formatter that prints a single structured document."""

    @abstractmethod
    def format(self, data: Any) -> Generator[str, None, None]:
        """Format the data object."""

    def print(self, data: Any, file: TextIO = sys.stdout) -> None:
        """Print the data object."""
        for line in self.format(data):
            print(line, file=file)


class YamlFormatter(StructFormatter):
    """A formatter that prints yaml output."""

    def format(self, data: Any) -> Generator[str, None, None]:
        """Format the data object."""
        content = yaml.dump(data, sort_keys=False, explicit_start=True)
        yield from content.rstrip("\n").split("\n")


class JsonFormatter(StructFormatter):
    """A formatter that prints json output."""

    def format(self, data: Any) -> Generator[str, None, None]:
        """Format the data object."""
        yield from json.dumps(data, indent=4, sort_keys=False).split("\n")


def struct_formatter(output: str) -> StructFormatter:
    """Return the formatter for an `--output` choice."""
    if output == "json":
        return JsonFormatter()
    return YamlFormatter()
