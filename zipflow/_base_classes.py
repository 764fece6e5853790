from abc import abstractmethod, ABCMeta
from os import PathLike
from types import TracebackType
from typing import BinaryIO, Self

StreamOrPath = int | str | bytes | PathLike[str] | PathLike[bytes] | BinaryIO


def open_stream(f: StreamOrPath, mode: str, required: tuple[str, ...]) -> tuple[BinaryIO, bool]:
    """Return binary stream for ``f`` and whether it was opened here.

    ``f`` must be a filename, pathlike object, file descriptor or a binary
    stream having all ``required`` methods.
    """
    if isinstance(f, (int, str, bytes, PathLike)):
        return open(f, mode), True
    if all(callable(getattr(f, name, None)) for name in required):
        return f, False
    raise TypeError(
        f"Expected argument f to be int, str, bytes, os.PathLike object or a binary stream, got '{type(f).__name__}' instead."
    )


class Archive(metaclass=ABCMeta):
    """Base class for archive readers. Streams opened from paths are owned and closed by the archive."""

    def __init__(self, file: BinaryIO, owned: bool):
        self._file: BinaryIO = file
        self._owned: bool = owned
        self._closed: bool = False

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the underlying stream if it was opened by the archive."""
        if not self._closed:
            self._closed = True
            if self._owned:
                self._file.close()

    @staticmethod
    @abstractmethod
    def open(f: StreamOrPath) -> 'Archive':
        """Open archive and return its representation.

        ``f`` is either a text or byte string giving the name
        (and the path if the archive isn't in the current working directory)
        of the archive to be opened, an integer file descriptor or a binary
        stream supporting ``read`` and ``seek``.
        """

    @abstractmethod
    def namelist(self) -> list[str]:
        """Names of all entries in storage order."""


class NewArchive(metaclass=ABCMeta):
    """Class with methods that should be implemented in any archive writer."""

    def __init__(self, file: BinaryIO, owned: bool, encoding: str):
        self._file: BinaryIO = file
        self._owned: bool = owned
        self._encoding: str = encoding

    def __enter__(self) -> Self:
        return self

    @abstractmethod
    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        """Finish the archive unless leaving because of an exception."""

    @property
    def encoding(self) -> str:
        return self._encoding

    def _release(self) -> None:
        if self._owned:
            self._file.close()

    @abstractmethod
    def write_entry(self, name: str | bytes, data: bytes, /, **options) -> object:
        """Add entry ``name`` with all of its ``data`` at once."""

    @abstractmethod
    def finish_archive(self, comment: str | bytes | None = None) -> None:
        """Write archive trailer. No entries can be added afterwards.

        Additional ``comment`` can be applied to the archive.
        """
