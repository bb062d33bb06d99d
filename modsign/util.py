# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import enum
import os
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import IO, Any, TypeVar, Union

T = TypeVar("T")

# Borrowed from https://github.com/python/typeshed/blob/3d14016085aed8bcf0cf67e9e5a70790ce1ad8ea/stdlib/3/subprocess.pyi#L24
_FILE = Union[None, int, IO[Any]]
PathString = Union[Path, str]


def unique(seq: Sequence[T]) -> list[T]:
    return list(dict.fromkeys(seq))


@contextlib.contextmanager
def chdir(directory: PathString) -> Iterator[None]:
    old = Path.cwd()

    if old == directory:
        yield
        return

    try:
        os.chdir(directory)
        yield
    finally:
        os.chdir(old)


@contextlib.contextmanager
def umask(mask: int) -> Iterator[None]:
    old = os.umask(mask)
    try:
        yield
    finally:
        os.umask(old)


def rooted(root: Path, path: PathString) -> Path:
    """Resolve an absolute host path below an alternative filesystem root."""
    return root / os.fspath(path).lstrip("/")


class StrEnum(enum.Enum):
    def __str__(self) -> str:
        assert isinstance(self.value, str)
        return self.value

    # Used by enum.auto() to get the next value.
    @staticmethod
    def _generate_next_value_(name: str, start: int, count: int, last_values: Sequence[str]) -> str:
        return name.replace("_", "-")

    @classmethod
    def values(cls) -> list[str]:
        return list(s.replace("_", "-") for s in map(str, cls.__members__))
