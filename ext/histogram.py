"""regasm extension: opcode histogram.

Counts every fetched instruction (including predicated-off ones) and prints a
per-opcode summary to stderr when the program ends.
"""

from __future__ import annotations

import sys
from typing import Any

import numpy as np

from assembler import Opcode
from extensions import ExtensionAPI

REGASM_EXTENSION_NAME = "histogram"
REGASM_EXTENSION_API_VERSION = 1


def _get_counts(machine: Any) -> np.ndarray:
    counts = getattr(machine, "_histogram_counts", None)
    if counts is None:
        counts = np.zeros(len(Opcode), dtype=np.int64)
        setattr(machine, "_histogram_counts", counts)
    return counts


def _reset(machine: Any) -> None:
    _get_counts(machine)[:] = 0


def _count(machine: Any, instruction: Any) -> None:
    _get_counts(machine)[int(instruction.opcode)] += 1


def format_report(counts: np.ndarray) -> str:
    total = int(counts.sum())
    lines = [f"histogram: {total} instructions"]
    for index in np.argsort(-counts, kind="stable"):
        if counts[index] == 0:
            break
        lines.append(f"  {Opcode(int(index)).mnemonic:<6}{int(counts[index]):>8}")
    return "\n".join(lines)


def _report(machine: Any, state: Any) -> None:
    print(format_report(_get_counts(machine)), file=sys.stderr)


def regasm_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=REGASM_EXTENSION_NAME, version="1.0.0")
    ext.on_event("program_start", _reset)
    ext.on_event("before_step", _count)
    ext.on_event("program_end", _report)
