from __future__ import annotations
from dataclasses import dataclass
from typing import Any, List

import numpy as np
from numpy.typing import NDArray


class BefungeError(Exception):
    """Base class for interpreter errors."""


class BefungeConfigError(BefungeError):
    """Raised when an interpreter is configured with invalid options."""


SPACE = " "
SPACE_CODE = ord(SPACE)
MAX_CODE_POINT = 0x10FFFF


def to_char(code: int) -> str:
    """Map a stack value to the character it stands for.

    Values outside the Unicode range wrap modulo 256, like a byte-oriented chr().
    """
    if 0 <= code <= MAX_CODE_POINT:
        return chr(code)
    return chr(code % 256)


def split_lines(source: str) -> List[str]:
    # A trailing line break yields a trailing empty row.
    text = source.replace("\r\n", "\n").replace("\r", "\n")
    return text.split("\n")


@dataclass
class Grid:
    width: int
    height: int
    cells: NDArray[Any]

    @classmethod
    def build(cls, source: str) -> "Grid":
        lines = split_lines(source)
        height = len(lines)
        width = max((len(line) for line in lines), default=0)
        cells = np.full((height, width), SPACE_CODE, dtype=np.int64)
        for row, line in enumerate(lines):
            if line:
                cells[row, : len(line)] = [ord(ch) for ch in line]
        return cls(width=width, height=height, cells=cells)

    @property
    def is_empty(self) -> bool:
        return self.width == 0 or self.height == 0

    def in_bounds(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def read(self, x: int, y: int) -> str:
        if not self.in_bounds(x, y):
            return SPACE
        return chr(int(self.cells[y, x]))

    def read_code(self, x: int, y: int, default: int = 0) -> int:
        if not self.in_bounds(x, y):
            return default
        return int(self.cells[y, x])

    def write(self, x: int, y: int, char: str) -> bool:
        if not self.in_bounds(x, y):
            return False
        self.cells[y, x] = ord(char)
        return True

    def render(self) -> str:
        rows: List[str] = []
        for row in self.cells:
            rows.append("".join(chr(int(code)) for code in row).rstrip(SPACE))
        return "\n".join(rows)


def build_grid(source: str) -> Grid:
    return Grid.build(source)
