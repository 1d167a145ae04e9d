"""ZIP archive access.

The relocation pipeline only needs two narrow capabilities:

- an ordered, single-pass enumeration of input entries (:class:`ZipArchiveReader`);
- a sequential sink that writes one complete entry at a time
  (:class:`ZipArchiveWriter`).
"""

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import BinaryIO, Protocol
import pathlib
import zipfile
import zlib

from jar_relocator.errors import IOFailureError, MalformedInputError

DateTime = tuple[int, int, int, int, int, int]

_FILE_MODE: int = 0o100644
_DIR_MODE: int = 0o040755
_MSDOS_DIR_ATTR: int = 0x10


@dataclass(frozen=True, slots=True)
class ArchiveEntry:
    """One entry of an input archive.

    :ivar name: Entry path (``/``-delimited).
    :ivar is_directory: Whether the entry is a directory marker.
    :ivar last_modified: ZIP ``date_time`` tuple.
    :ivar opener: Callable returning a readable stream over the entry content.
    """

    name: str
    is_directory: bool
    last_modified: DateTime
    opener: Callable[[], BinaryIO]

    def open(self) -> BinaryIO:
        return self.opener()

    def read(self) -> bytes:
        """Read the whole entry content.

        :returns: Entry bytes.
        :raises MalformedInputError: If the entry data is corrupt, encrypted or
            uses an unsupported compression method.
        :raises IOFailureError: If reading fails.
        """

        try:
            with self.open() as f:
                return f.read()
        except (zipfile.BadZipFile, zlib.error, EOFError) as e:
            raise MalformedInputError(
                f"Corrupt archive entry: {e}", entry_name=self.name, stage="read"
            ) from e
        except (NotImplementedError, RuntimeError) as e:
            # zipfile signals encryption and unknown compression methods this way.
            raise MalformedInputError(
                f"Unreadable archive entry: {e}", entry_name=self.name, stage="read"
            ) from e
        except OSError as e:
            raise IOFailureError(
                f"Failed to read archive entry: {e}", entry_name=self.name, stage="read"
            ) from e


class ArchiveWriter(Protocol):
    """Sequential archive sink."""

    def put_directory(self, name: str, date_time: DateTime) -> None:
        ...

    def put_entry(self, name: str, date_time: DateTime, data: bytes) -> None:
        ...


class ZipArchiveReader:
    """Reads entries from a ZIP/JAR file in central-directory order."""

    def __init__(self, path: pathlib.Path) -> None:
        self.path: pathlib.Path = path
        self._zf: zipfile.ZipFile | None = None

    def __enter__(self) -> "ZipArchiveReader":
        try:
            self._zf = zipfile.ZipFile(self.path, "r")
        except zipfile.BadZipFile as e:
            raise MalformedInputError(f"Not a valid archive: {self.path}", stage="read") from e
        except OSError as e:
            raise IOFailureError(f"Failed to open archive {self.path}: {e}", stage="read") from e
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._zf is not None:
            self._zf.close()
            self._zf = None

    def entries(self) -> Iterator[ArchiveEntry]:
        """Enumerate the archive entries.

        :returns: Iterator over entries, in archive order.
        :raises RuntimeError: If the reader is not open.
        """

        zf: zipfile.ZipFile | None = self._zf
        if zf is None:
            raise RuntimeError("ZipArchiveReader is not open; use it as a context manager.")
        for info in zf.infolist():
            yield ArchiveEntry(
                name=info.filename,
                is_directory=info.is_dir(),
                last_modified=info.date_time,
                opener=_zip_opener(zf, info),
            )


def _zip_opener(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> Callable[[], BinaryIO]:
    def opener() -> BinaryIO:
        return zf.open(info, "r")  # type: ignore[return-value]

    return opener


def _validate_compresslevel(compresslevel: int) -> None:
    """Validate a zip compression level.

    :param compresslevel: Compression level (0-9).
    :raises ValueError: If the level is out of range.
    """

    if compresslevel < 0 or compresslevel > 9:
        raise ValueError(f"Invalid compresslevel={compresslevel}; expected 0-9.")


class ZipArchiveWriter:
    """Writes entries to a ZIP/JAR stream, one complete entry per call."""

    def __init__(self, fileobj: BinaryIO | pathlib.Path, *, compresslevel: int = 6) -> None:
        _validate_compresslevel(compresslevel)
        self._compresslevel: int = compresslevel
        self._zf: zipfile.ZipFile = zipfile.ZipFile(
            fileobj,
            "w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=compresslevel,
        )

    def __enter__(self) -> "ZipArchiveWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        try:
            self._zf.close()
        except OSError as e:
            raise IOFailureError(f"Failed to finalize archive: {e}", stage="write") from e

    def put_directory(self, name: str, date_time: DateTime) -> None:
        if name.endswith("/") is False:
            name += "/"
        info: zipfile.ZipInfo = zipfile.ZipInfo(name, date_time)
        info.compress_type = zipfile.ZIP_STORED
        info.external_attr = (_DIR_MODE << 16) | _MSDOS_DIR_ATTR
        self._write(info, b"")

    def put_entry(self, name: str, date_time: DateTime, data: bytes) -> None:
        info: zipfile.ZipInfo = zipfile.ZipInfo(name, date_time)
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = _FILE_MODE << 16
        self._write(info, data)

    def _write(self, info: zipfile.ZipInfo, data: bytes) -> None:
        try:
            self._zf.writestr(info, data, compresslevel=self._compresslevel)
        except OSError as e:
            raise IOFailureError(
                f"Failed to write archive entry: {e}", entry_name=info.filename, stage="write"
            ) from e
