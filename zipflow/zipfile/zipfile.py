import codecs
import io
import logging
from dataclasses import replace
from datetime import datetime
from platform import system
from types import TracebackType
from typing import BinaryIO, Optional

from .._base_classes import Archive, NewArchive, StreamOrPath, open_stream
from ..constants import *
from ..exceptions import *
from ._zipfile import (
    ArchiveEntry, CentralDirectory, CDEnd, DataDescriptor, LocalHeader,
    datetime_to_dos, extra_field_ids, read_central_directory
)
from ._zip_algorythms import Decoder, Encoder, get_codec, level_to_flags
from .utils.checksum import Crc32, crc32_update

logger = logging.getLogger(__name__)

EntryKey = ArchiveEntry | int | str | bytes


def _seekable(f: BinaryIO) -> bool:
    try:
        return bool(f.seekable())
    except (AttributeError, OSError):
        return False


def _host_platform() -> int:
    # Only these values are relevant.
    #  0 - MS-DOS and OS/2 (FAT / VFAT / FAT32 file systems)
    #  3 - UNIX
    # 19 - OS X (Darwin)
    pl = system()
    if pl == 'Windows':
        return 0
    if pl == 'Darwin':
        return 19
    return 3


class _EntrySource:
    """Compressed data of one entry inside a shared stream.

    Position is kept here and restored before every read, so several
    entries of one archive can be read at the same time.
    """

    def __init__(self, file: BinaryIO, start: int, length: int):
        self._file: BinaryIO = file
        self._pos: int = start
        self._left: int = length

    def read(self, size: int = -1) -> bytes:
        if self._left <= 0:
            return b''
        if size < 0 or size > self._left:
            size = self._left
        self._file.seek(self._pos)
        data = self._file.read(size)
        if not data:
            raise FormatError('Entry data is truncated.')
        self._pos += len(data)
        self._left -= len(data)
        return data


class ZipEntryStream(io.RawIOBase):
    """Readable stream of decompressed entry data returned by ``ZipFile.open_entry``.

    CRC-32 and size are verified once the declared amount of data has been
    produced. IntegrityError is raised by the read that reaches the end;
    data returned before that is not affected.
    """

    def __init__(self, entry: ArchiveEntry, decoder: Decoder):
        super().__init__()
        self._entry: ArchiveEntry = entry
        self._decoder: Decoder = decoder
        self._crc: Crc32 = Crc32()
        self._eof: bool = False

    @property
    def entry(self) -> ArchiveEntry:
        return self._entry

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        if self.closed:
            raise ValueError('I/O operation on closed entry stream.')
        if self._eof or len(b) == 0:
            return 0

        # Never ask for more than declared, overflow is detected separately
        left = self._entry.uncompressed_size - self._crc.size
        data = self._decoder.read(max(min(left, len(b)), 1))
        if not data:
            self._verify()
            return 0

        self._crc.update(data)
        if self._crc.size > self._entry.uncompressed_size:
            raise IntegrityError(f'Entry {self._entry.raw_name!r} has more data than declared.')
        if self._crc.size == self._entry.uncompressed_size:
            if self._decoder.read(1):
                raise IntegrityError(f'Entry {self._entry.raw_name!r} has more data than declared.')
            self._verify()

        n = len(data)
        b[:n] = data
        return n

    def _verify(self) -> None:
        self._eof = True
        if self._crc.size != self._entry.uncompressed_size:
            raise IntegrityError(
                f'Bad size of entry {self._entry.raw_name!r}: '
                f'expected {self._entry.uncompressed_size}, got {self._crc.size}.'
            )
        if self._crc.value != self._entry.crc:
            raise IntegrityError(
                f'Bad CRC-32 of entry {self._entry.raw_name!r}: '
                f'expected {self._entry.crc:08x}, got {self._crc.value:08x}.'
            )


class ZipFile(Archive):
    """Class representing the zip file and its contents. Use one of the static methods to initialise it.

    Only the Central Directory is read when archive is opened. Entry data is
    read lazily with ``open_entry`` or ``read``.
    """

    def __init__(self, file: BinaryIO, owned: bool, directory: CentralDirectory):
        super().__init__(file, owned)
        self._directory: CentralDirectory = directory

    @staticmethod
    def open(f: StreamOrPath) -> 'ZipFile':
        """Open zip file for reading.

        Raises FormatError if archive is damaged and UnsupportedFeatureError if
        it's a ZIP64 or multi-disk archive. Unreadable entries don't prevent
        archive from opening, they fail only when opened.
        """
        file, owned = open_stream(f, 'rb', ('read', 'seek'))
        try:
            directory = read_central_directory(file)
        except BaseException:
            if owned:
                file.close()
            raise
        return ZipFile(file, owned, directory)

    @staticmethod
    def new(f: StreamOrPath, comment: str | bytes = b'', encoding: str = 'utf-8') -> 'NewZipFile':
        """Create new zip file writing to ``f``.

        ``encoding`` is used to encode names and comments given as strings.
        """
        file, owned = open_stream(f, 'wb', ('write',))
        return NewZipFile(file, owned, comment, encoding)

    @property
    def directory(self) -> CentralDirectory:
        return self._directory

    @property
    def entries(self) -> tuple[ArchiveEntry, ...]:
        return self._directory.entries

    @property
    def comment(self) -> bytes:
        return self._directory.comment

    @property
    def total_entries(self) -> int:
        return self._directory.total_entries

    def __len__(self) -> int:
        return len(self._directory)

    def __iter__(self):
        return iter(self._directory)

    def namelist(self) -> list[str]:
        return [entry.filename for entry in self._directory]

    def get_entry(self, key: int | str | bytes) -> ArchiveEntry:
        """Return entry by index or name. If names repeat, the first entry is returned."""
        return self._directory.get(key)

    def open_entry(self, key: EntryKey) -> ZipEntryStream:
        """Open entry for reading.

        Local file header is checked against the directory. Raises
        UnsupportedFeatureError if entry uses an unsupported feature and
        FormatError if its headers don't agree.
        """
        if self._closed:
            raise UsageError('Archive is closed.')
        entry = key if isinstance(key, ArchiveEntry) else self._directory.get(key)

        if entry.unsupported_reason is not None:
            raise UnsupportedFeatureError(f'Entry {entry.raw_name!r}: {entry.unsupported_reason}')
        codec = get_codec(entry.compression_method)

        self._file.seek(entry.header_offset)
        header = LocalHeader.__init_raw__(self._file)
        if header.raw_name != entry.raw_name:
            raise FormatError(f'Local file name {header.raw_name!r} differs from {entry.raw_name!r}.')
        if header.compression_method != entry.compression_method:
            raise FormatError(f'Local compression method of {entry.raw_name!r} differs from the directory.')
        if ZIP64_EXTRA_ID in extra_field_ids(header.extra) \
                or INT32_MAX in (header.compressed_size, header.uncompressed_size):
            raise UnsupportedFeatureError(f'Entry {entry.raw_name!r}: ZIP64 local header is not supported.')
        if not header.flags & FLAG_DATA_DESCRIPTOR and (
                header.compressed_size, header.uncompressed_size
        ) != (entry.compressed_size, entry.uncompressed_size):
            raise FormatError(f'Local sizes of {entry.raw_name!r} differ from the directory.')

        data_start = entry.header_offset + header.size
        data_end = data_start + entry.compressed_size
        if data_end > self._directory.offset:
            raise FormatError(f'Data of {entry.raw_name!r} overlaps the central directory.')

        if entry.has_data_descriptor or header.flags & FLAG_DATA_DESCRIPTOR:
            self._check_data_descriptor(entry, data_end)

        logger.debug('Opening entry %r (%s, %d bytes)', entry.raw_name, codec.name, entry.compressed_size)
        source = _EntrySource(self._file, data_start, entry.compressed_size)
        return ZipEntryStream(entry, codec.decoder(source))

    def _check_data_descriptor(self, entry: ArchiveEntry, position: int) -> None:
        if not _seekable(self._file):
            raise UnsupportedFeatureError('Data descriptor requires seekable source.')
        self._file.seek(position)
        descriptor = DataDescriptor.__init_raw__(self._file)
        if (descriptor.crc, descriptor.compressed_size, descriptor.uncompressed_size) != (
                entry.crc, entry.compressed_size, entry.uncompressed_size
        ):
            raise FormatError(f'Data descriptor of {entry.raw_name!r} differs from the directory.')

    def read(self, key: EntryKey) -> bytes:
        """Return decompressed data of the entry."""
        with self.open_entry(key) as stream:
            return stream.read()


class ZipEntryWriter:
    """Entry being written, returned by ``NewZipFile.start_entry``.

    It stays valid until the entry is finished, after that every call raises UsageError.
    """

    def __init__(self, archive: 'NewZipFile', entry: ArchiveEntry, encoder: Encoder):
        self._archive: 'NewZipFile' = archive
        self._entry: ArchiveEntry = entry
        self._encoder: Encoder = encoder
        self._crc: Crc32 = Crc32()
        self.closed: bool = False

    def __enter__(self) -> 'ZipEntryWriter':
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        if exc_type is None and not self.closed:
            self.close()

    @property
    def name(self) -> bytes:
        return self._entry.raw_name

    def write(self, data: bytes) -> int:
        """Compress ``data`` into the archive. Returns amount of uncompressed bytes written."""
        if self._archive.finished:
            raise WriterClosed('Archive is already finished.')
        if self.closed:
            raise UsageError(f'Entry {self._entry.raw_name!r} is already finished.')
        self._crc.update(data)
        self._encoder.write(data)
        return len(data)

    def close(self) -> ArchiveEntry:
        """Finish the entry. Same as ``NewZipFile.finish_entry``."""
        if self._archive.finished:
            raise WriterClosed('Archive is already finished.')
        if self.closed:
            raise UsageError(f'Entry {self._entry.raw_name!r} is already finished.')
        return self._archive.finish_entry()


class NewZipFile(NewArchive):
    """Class used to create new zip file.

    Entries are written one after another straight to the stream. If the
    stream is seekable, local headers are patched with final sizes,
    otherwise each entry is followed by a data descriptor.
    """

    def __init__(self, file: BinaryIO, owned: bool, comment: str | bytes, encoding: str):
        super().__init__(file, owned, encoding)
        self._utf8: bool = codecs.lookup(encoding).name == 'utf-8'
        self._comment: bytes = self._encode_comment(comment, 'Archive')
        self._entries: list[ArchiveEntry] = []
        self._current: Optional[ZipEntryWriter] = None
        self._finished: bool = False
        self._seekable: bool = _seekable(file)
        self._offset: int = file.tell() if self._seekable else 0
        self._platform: int = _host_platform()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        if self._finished:
            return
        if exc_type is not None:
            logger.warning('Archive was left unfinished because of %s: %s', exc_type.__name__, exc_value)
            if self._current is not None:
                self._current.closed = True
                self._current = None
            self._finished = True
            self._release()
            return
        if self._current is not None:
            self.finish_entry()
        self.finish_archive()

    @property
    def entries(self) -> tuple[ArchiveEntry, ...]:
        """Entries finished so far."""
        return tuple(self._entries)

    @property
    def finished(self) -> bool:
        return self._finished

    def _write(self, data: bytes) -> None:
        self._file.write(data)
        self._offset += len(data)

    def _check_idle(self) -> None:
        if self._finished:
            raise WriterClosed('Archive is already finished.')
        if self._current is not None:
            raise EntryInProgress(f'Entry {self._current.name!r} must be finished first.')

    def _check_open(self) -> ZipEntryWriter:
        if self._finished:
            raise WriterClosed('Archive is already finished.')
        if self._current is None:
            raise UsageError('No entry is open, call start_entry first.')
        return self._current

    def _encode_comment(self, comment: str | bytes, what: str) -> bytes:
        raw = comment if isinstance(comment, bytes) else comment.encode(self._encoding)
        if len(raw) > MAX_COMMENT_LENGTH:
            raise UsageError(f'{what} comment is longer than {MAX_COMMENT_LENGTH} bytes.')
        return raw

    def _prepare_entry(
            self,
            name: str | bytes,
            compression: str,
            level: str,
            last_mod_time: Optional[datetime],
            external_attrs: Optional[int],
            comment: str | bytes,
            extra: bytes
    ) -> ArchiveEntry:
        """Validate options and build entry with empty CRC and sizes. Nothing is written."""

        self._check_idle()
        if len(self._entries) >= INT16_MAX:
            raise UnsupportedFeatureError(f'More than {INT16_MAX - 1} entries require ZIP64.')
        if self._offset >= INT32_MAX:
            raise UnsupportedFeatureError('Archives larger than 4 GiB require ZIP64.')

        flags = 0
        if isinstance(name, bytes):
            raw_name = name  # Stored as is
        else:
            raw_name = name.encode(self._encoding)
            text = name + comment if isinstance(comment, str) else name
            if self._utf8 and not text.isascii():
                flags |= FLAG_UTF8
        if not raw_name:
            raise UsageError('Entry name must not be empty.')
        if len(raw_name) > INT16_MAX:
            raise UsageError(f'Entry name is longer than {INT16_MAX} bytes.')
        if len(extra) > INT16_MAX:
            raise UsageError(f'Extra field is longer than {INT16_MAX} bytes.')
        if ZIP64_EXTRA_ID in extra_field_ids(extra):
            raise UnsupportedFeatureError('ZIP64 extra field is not supported.')
        raw_comment = self._encode_comment(comment, 'Entry')

        is_dir = raw_name.endswith(b'/')
        if is_dir:
            # Folders are always stored
            compression = STORED
        codec = get_codec(compression)
        flags |= level_to_flags(codec.method, level)

        if external_attrs is None:
            external_attrs = ATTR_DIRECTORY if is_dir else ATTR_ARCHIVE
        dos_time, dos_date = datetime_to_dos(last_mod_time or datetime.now())

        return ArchiveEntry(
            raw_name=raw_name,
            compression_method=codec.method,
            crc=0,
            compressed_size=0,
            uncompressed_size=0,
            header_offset=self._offset,
            dos_time=dos_time,
            dos_date=dos_date,
            flags=flags,
            external_attrs=external_attrs,
            extra=extra,
            raw_comment=raw_comment,
            platform=self._platform,
            version_needed_to_extract=max(codec.version_needed, 20 if is_dir else 10)
        )

    def start_entry(
            self,
            name: str | bytes,
            /,
            compression: ZipCompressions = 'Deflate',
            level: ZipLevels = 'Normal',
            last_mod_time: Optional[datetime] = None,
            external_attrs: Optional[int] = None,
            comment: str | bytes = '',
            extra: bytes = b''
    ) -> ZipEntryWriter:
        """Start entry ``name`` and write its local file header.

        Data is added with ``write`` and entry is completed by ``finish_entry``.
        Names given as bytes are stored as is, names ending with '/' are folders.

        Raises EntryInProgress if another entry is open and WriterClosed if
        archive is finished.
        """
        entry = self._prepare_entry(name, compression, level, last_mod_time, external_attrs, comment, extra)
        codec = get_codec(entry.compression_method)
        encoder = codec.encoder(self._file, level)

        if not self._seekable:
            # Sizes will follow the data
            entry = replace(entry, flags=entry.flags | FLAG_DATA_DESCRIPTOR)

        self._write(entry.local_header().encode())
        self._current = ZipEntryWriter(self, entry, encoder)
        logger.debug('Started entry %r at %d', entry.raw_name, entry.header_offset)
        return self._current

    def write(self, data: bytes) -> int:
        """Write ``data`` to the open entry."""
        return self._check_open().write(data)

    def finish_entry(self) -> ArchiveEntry:
        """Complete the open entry and return its final metadata."""
        current = self._check_open()
        current._encoder.flush()

        compressed_size = current._encoder.compressed_size
        uncompressed_size = current._crc.size
        self._offset += compressed_size
        current.closed = True
        self._current = None

        if compressed_size >= INT32_MAX or uncompressed_size >= INT32_MAX:
            # The archive can't be completed without zip64 records
            self._finished = True
            self._release()
            raise UnsupportedFeatureError(f'Entry {current.name!r} is too large, ZIP64 is not supported.')

        entry = replace(
            current._entry,
            crc=current._crc.value,
            compressed_size=compressed_size,
            uncompressed_size=uncompressed_size
        )
        if entry.has_data_descriptor:
            self._write(DataDescriptor(entry.crc, compressed_size, uncompressed_size).encode())
        else:
            self._file.seek(entry.header_offset + 14)
            self._file.write(
                entry.crc.to_bytes(4, 'little')
                + compressed_size.to_bytes(4, 'little')
                + uncompressed_size.to_bytes(4, 'little')
            )
            self._file.seek(self._offset)

        self._entries.append(entry)
        logger.debug('Finished entry %r: %d -> %d bytes', entry.raw_name, uncompressed_size, compressed_size)
        return entry

    def write_entry(
            self,
            name: str | bytes,
            data: bytes,
            /,
            compression: ZipCompressions = 'Deflate',
            level: ZipLevels = 'Normal',
            last_mod_time: Optional[datetime] = None,
            external_attrs: Optional[int] = None,
            comment: str | bytes = '',
            extra: bytes = b''
    ) -> ArchiveEntry:
        """Add entry ``name`` with all of its ``data`` at once.

        Since CRC and sizes are known in advance, local header is written
        complete and no data descriptor is needed.
        """
        entry = self._prepare_entry(name, compression, level, last_mod_time, external_attrs, comment, extra)
        codec = get_codec(entry.compression_method)

        if codec.compress is not None:
            compressed = codec.compress(data, level)
        else:
            buffer = io.BytesIO()
            encoder = codec.encoder(buffer, level)
            encoder.write(data)
            encoder.flush()
            compressed = buffer.getvalue()

        if len(compressed) >= INT32_MAX or len(data) >= INT32_MAX:
            raise UnsupportedFeatureError(f'Entry {entry.raw_name!r} is too large, ZIP64 is not supported.')

        entry = replace(
            entry,
            crc=crc32_update(0, data),
            compressed_size=len(compressed),
            uncompressed_size=len(data)
        )
        self._write(entry.local_header().encode())
        self._write(compressed)
        self._entries.append(entry)
        logger.debug('Wrote entry %r at %d: %d -> %d bytes',
                     entry.raw_name, entry.header_offset, len(data), len(compressed))
        return entry

    def finish_archive(self, comment: str | bytes | None = None) -> None:
        """Write the Central Directory and its end record.

        Raises EntryInProgress if an entry is still open and WriterClosed if
        archive is already finished.
        """
        self._check_idle()
        raw_comment = self._comment if comment is None else self._encode_comment(comment, 'Archive')

        records = [entry.encode() for entry in self._entries]
        cd_offset = self._offset
        cd_size = sum(len(record) for record in records)
        if cd_offset >= INT32_MAX or cd_size >= INT32_MAX:
            raise UnsupportedFeatureError('Central directory beyond 4 GiB requires ZIP64.')

        for record in records:
            self._write(record)
        endof_cd = CDEnd(
            disk_num=0,
            disk_num_CD=0,
            total_entries=len(records),
            total_CD_entries=len(records),
            sizeof_CD=cd_size,
            offset=cd_offset,
            comment=raw_comment
        )
        self._write(endof_cd.encode())
        self._finished = True
        if callable(getattr(self._file, 'flush', None)):
            self._file.flush()
        logger.debug('Finished archive with %d entries, central directory at %d', len(records), cd_offset)
        self._release()
