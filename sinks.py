"""Debug sinks receiving ``dbg`` output from the machine."""
from __future__ import annotations
from typing import Callable, List, Optional, Tuple


class DebugSink:
    """Append-only writer for (value, width) pairs, in program order."""

    def write(self, value: int, width: int) -> None:
        raise NotImplementedError


def format_value(value: int, width: int) -> str:
    # width 0 means no padding
    return f"{value:>{width}d}" if width > 0 else str(value)


class TextDebugSink(DebugSink):
    def __init__(self, output_sink: Optional[Callable[[str], None]] = None) -> None:
        self.output_sink = output_sink or (lambda text: print(text))

    def write(self, value: int, width: int) -> None:
        self.output_sink(format_value(value, width))


class RecordingDebugSink(DebugSink):
    def __init__(self) -> None:
        self.entries: List[Tuple[int, int]] = []

    def write(self, value: int, width: int) -> None:
        self.entries.append((value, width))

    @property
    def values(self) -> List[int]:
        return [value for value, _width in self.entries]
