import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import cached_property
from typing import BinaryIO, Optional

from ..constants import *
from ..exceptions import *
from ._zip_algorythms import is_registered, level_from_flags, method_name

logger = logging.getLogger(__name__)


def _le(raw: bytes, start: int, size: int) -> int:
    return int.from_bytes(raw[start:start + size], 'little')


def _read_exact(file: BinaryIO, size: int, what: str) -> bytes:
    data = file.read(size)
    if len(data) != size:
        raise FormatError(f'Unexpected end of data while reading {what}.')
    return data


def dos_to_datetime(dos_time: int, dos_date: int) -> Optional[datetime]:
    """Convert MS-DOS time and date fields. Returns None if they don't form a valid datetime."""

    # This conversion is based on java8 source code.
    try:
        return datetime(
            (dos_date >> 9) + 1980, (dos_date >> 5) & 0xF, dos_date & 0x1F,
            (dos_time >> 11) & 0x1F, (dos_time >> 5) & 0x3F, (dos_time << 1) & 0x3E
        )
    except ValueError:
        return None


def datetime_to_dos(dt: datetime) -> tuple[int, int]:
    """Convert ``dt`` to MS-DOS (time, date). Seconds are rounded down to even,
    years outside of 1980-2107 are clamped."""

    if dt.year < 1980:
        dt = datetime(1980, 1, 1)
    elif dt.year > 2107:
        dt = datetime(2107, 12, 31, 23, 59, 58)
    dos_time = dt.hour << 11 | dt.minute << 5 | dt.second >> 1
    dos_date = (dt.year - 1980) << 9 | dt.month << 5 | dt.day
    return dos_time, dos_date


def extra_field_ids(extra: bytes) -> list[int]:
    """Header ids of the blocks inside ``extra``. Malformed tail is ignored."""
    ids: list[int] = []
    pos = 0
    while pos + 4 <= len(extra):
        kind = _le(extra, pos, 2)
        length = _le(extra, pos + 2, 2)
        logger.debug('Parsing extra block %04x (%d bytes)', kind, length)
        ids.append(kind)
        pos += 4 + length
    return ids


@dataclass
class LocalHeader:
    """Contents of Local File Header without signature.
    See https://pkware.cachefly.net/webdocs/casestudies/APPNOTE.TXT for full documentation.
    """

    version_needed_to_extract: int
    flags: int
    compression_method: int
    dos_time: int
    dos_date: int
    crc: int
    compressed_size: int
    uncompressed_size: int
    raw_name: bytes
    extra: bytes

    @classmethod
    def __init_raw__(cls, file: BinaryIO) -> 'LocalHeader':
        raw = _read_exact(file, LOCAL_HEADER_SIZE, 'local file header')
        if raw[:4] != LOCAL_HEADER_SIGNATURE:
            raise FormatError('Bad local file header signature.')
        filename_length = _le(raw, 26, 2)
        extra_field_length = _le(raw, 28, 2)

        return cls(
            version_needed_to_extract=_le(raw, 4, 2),
            flags=_le(raw, 6, 2),
            compression_method=_le(raw, 8, 2),
            dos_time=_le(raw, 10, 2),
            dos_date=_le(raw, 12, 2),
            crc=_le(raw, 14, 4),
            compressed_size=_le(raw, 18, 4),
            uncompressed_size=_le(raw, 22, 4),
            raw_name=_read_exact(file, filename_length, 'local file name'),
            extra=_read_exact(file, extra_field_length, 'local extra field')
        )

    @property
    def size(self) -> int:
        """Length of encoded header."""
        return LOCAL_HEADER_SIZE + len(self.raw_name) + len(self.extra)

    def encode(self) -> bytes:
        byte_str: bytes = LOCAL_HEADER_SIGNATURE
        byte_str += self.version_needed_to_extract.to_bytes(2, 'little')
        byte_str += self.flags.to_bytes(2, 'little')
        byte_str += self.compression_method.to_bytes(2, 'little')
        byte_str += self.dos_time.to_bytes(2, 'little')
        byte_str += self.dos_date.to_bytes(2, 'little')
        byte_str += self.crc.to_bytes(4, 'little')
        byte_str += self.compressed_size.to_bytes(4, 'little')
        byte_str += self.uncompressed_size.to_bytes(4, 'little')
        byte_str += len(self.raw_name).to_bytes(2, 'little')
        byte_str += len(self.extra).to_bytes(2, 'little')
        byte_str += self.raw_name
        byte_str += self.extra
        return byte_str


@dataclass
class DataDescriptor:
    """Record following entry data when bit 3 of general purpose flag is set."""

    crc: int
    compressed_size: int
    uncompressed_size: int

    @classmethod
    def __init_raw__(cls, file: BinaryIO) -> 'DataDescriptor':
        raw = _read_exact(file, 4, 'data descriptor')
        if raw == DATA_DESCRIPTOR_SIGNATURE:  # This signature is optional
            raw = _read_exact(file, 12, 'data descriptor')
        else:
            raw += _read_exact(file, 8, 'data descriptor')
        return cls(_le(raw, 0, 4), _le(raw, 4, 4), _le(raw, 8, 4))

    def encode(self) -> bytes:
        byte_str: bytes = DATA_DESCRIPTOR_SIGNATURE
        byte_str += self.crc.to_bytes(4, 'little')
        byte_str += self.compressed_size.to_bytes(4, 'little')
        byte_str += self.uncompressed_size.to_bytes(4, 'little')
        return byte_str


@dataclass(frozen=True)
class ArchiveEntry:
    """Metadata of a single entry as stored in the Central Directory.
    Entry data is never loaded, use ``ZipFile.open_entry`` to read it.

    **Attributes**:
        * raw_name (`bytes`): Name exactly as stored. See ``filename`` for decoded one.
        * compression_method (`int`): Method code, see ``compression`` for its name.
        * crc (`int`): CRC-32 of uncompressed data.
        * compressed_size (`int`): Size of data inside the archive.
        * uncompressed_size (`int`): Size of data after decompression.
        * header_offset (`int`): Offset of the local file header.
        * dos_time, dos_date (`int`): Packed last modification time.
        * flags (`int`): General purpose bit flag.
        * external_attrs (`int`): Host dependent file attributes.
        * extra (`bytes`): Central extra field, kept as is.
        * raw_comment (`bytes`): Entry comment exactly as stored.
        * unsupported_reason (`str`, optional): Why entry data can't be read.
        Set while parsing, reported when entry is opened.
    """

    raw_name: bytes
    compression_method: int
    crc: int
    compressed_size: int
    uncompressed_size: int
    header_offset: int
    dos_time: int = 0
    dos_date: int = 0x21  # 1980-01-01
    flags: int = 0
    external_attrs: int = 0
    internal_attrs: int = 0
    extra: bytes = b''
    raw_comment: bytes = b''
    version_made_by: int = VERSION_MADE_BY
    platform: int = 0
    version_needed_to_extract: int = 20
    disk_number_start: int = 0
    unsupported_reason: Optional[str] = field(default=None, compare=False)

    @classmethod
    def __init_raw__(cls, file: BinaryIO) -> 'ArchiveEntry':
        """Read a Central Directory Header from ``file``."""
        raw = file.read(CD_HEADER_SIZE)
        if len(raw) != CD_HEADER_SIZE:
            raise FormatError('Corrupt directory: unexpected end of central directory.')
        if raw[:4] != CD_HEADER_SIGNATURE:
            raise FormatError('Corrupt directory: bad central directory header signature.')

        flags = _le(raw, 8, 2)
        compressed_size = _le(raw, 20, 4)
        uncompressed_size = _le(raw, 24, 4)
        disk_number_start = _le(raw, 34, 2)
        header_offset = _le(raw, 42, 4)
        try:
            raw_name = _read_exact(file, _le(raw, 28, 2), 'file name')
            extra = _read_exact(file, _le(raw, 30, 2), 'extra field')
            raw_comment = _read_exact(file, _le(raw, 32, 2), 'file comment')
        except FormatError as e:
            raise FormatError(f'Corrupt directory: {e}') from e

        reason: Optional[str] = None
        if INT32_MAX in (compressed_size, uncompressed_size, header_offset):
            reason = 'ZIP64 sizes are not supported.'
        elif ZIP64_EXTRA_ID in extra_field_ids(extra):
            reason = 'ZIP64 extra field is not supported.'
        elif flags & (FLAG_ENCRYPTED | FLAG_STRONG_ENCRYPTION):
            reason = 'Encrypted entries are not supported.'
        elif disk_number_start != 0:
            reason = 'Multi-disk archives are not supported.'

        return cls(
            raw_name=raw_name,
            compression_method=_le(raw, 10, 2),
            crc=_le(raw, 16, 4),
            compressed_size=compressed_size,
            uncompressed_size=uncompressed_size,
            header_offset=header_offset,
            dos_time=_le(raw, 12, 2),
            dos_date=_le(raw, 14, 2),
            flags=flags,
            external_attrs=_le(raw, 38, 4),
            internal_attrs=_le(raw, 36, 2),
            extra=extra,
            raw_comment=raw_comment,
            version_made_by=raw[4],
            platform=raw[5],
            version_needed_to_extract=_le(raw, 6, 2),
            disk_number_start=disk_number_start,
            unsupported_reason=reason
        )

    def encode(self) -> bytes:
        """Encode as Central Directory Header."""
        byte_str: bytes = CD_HEADER_SIGNATURE
        byte_str += self.version_made_by.to_bytes(1, 'little')
        byte_str += self.platform.to_bytes(1, 'little')
        byte_str += self.version_needed_to_extract.to_bytes(2, 'little')
        byte_str += self.flags.to_bytes(2, 'little')
        byte_str += self.compression_method.to_bytes(2, 'little')
        byte_str += self.dos_time.to_bytes(2, 'little')
        byte_str += self.dos_date.to_bytes(2, 'little')
        byte_str += self.crc.to_bytes(4, 'little')
        byte_str += self.compressed_size.to_bytes(4, 'little')
        byte_str += self.uncompressed_size.to_bytes(4, 'little')
        byte_str += len(self.raw_name).to_bytes(2, 'little')
        byte_str += len(self.extra).to_bytes(2, 'little')
        byte_str += len(self.raw_comment).to_bytes(2, 'little')
        byte_str += self.disk_number_start.to_bytes(2, 'little')
        byte_str += self.internal_attrs.to_bytes(2, 'little')
        byte_str += self.external_attrs.to_bytes(4, 'little')
        byte_str += self.header_offset.to_bytes(4, 'little')
        byte_str += self.raw_name
        byte_str += self.extra
        byte_str += self.raw_comment
        return byte_str

    def _decode(self, raw: bytes) -> str:
        if self.is_utf8:
            return raw.decode('utf-8', errors='replace')
        return raw.decode('cp437')

    @property
    def filename(self) -> str:
        """Name decoded as UTF-8 if language encoding flag is set, CP437 otherwise."""
        return self._decode(self.raw_name)

    @property
    def comment(self) -> str:
        return self._decode(self.raw_comment)

    @property
    def last_mod_time(self) -> Optional[datetime]:
        return dos_to_datetime(self.dos_time, self.dos_date)

    @property
    def is_dir(self) -> bool:
        return self.raw_name.endswith(b'/')

    @property
    def is_utf8(self) -> bool:
        return bool(self.flags & FLAG_UTF8)

    @property
    def is_encrypted(self) -> bool:
        return bool(self.flags & FLAG_ENCRYPTED)

    @property
    def has_data_descriptor(self) -> bool:
        return bool(self.flags & FLAG_DATA_DESCRIPTOR)

    @property
    def is_supported(self) -> bool:
        return self.unsupported_reason is None and is_registered(self.compression_method)

    @property
    def compression(self) -> str:
        """Name of the compression method, 'Unsupported' if entry can't be read."""
        if self.unsupported_reason is not None:
            return UNSUPPORTED
        return method_name(self.compression_method)

    @property
    def compression_level(self) -> str:
        return level_from_flags(self.compression_method, self.flags)

    def local_header(self) -> LocalHeader:
        """Local File Header matching this entry."""
        return LocalHeader(
            version_needed_to_extract=self.version_needed_to_extract,
            flags=self.flags,
            compression_method=self.compression_method,
            dos_time=self.dos_time,
            dos_date=self.dos_date,
            crc=self.crc,
            compressed_size=self.compressed_size,
            uncompressed_size=self.uncompressed_size,
            raw_name=self.raw_name,
            extra=self.extra
        )


@dataclass
class CDEnd:
    """Contents of End of Central Directory without signature.
    See https://pkware.cachefly.net/webdocs/casestudies/APPNOTE.TXT for full documentation.
    """

    disk_num: int
    disk_num_CD: int
    total_entries: int
    total_CD_entries: int
    sizeof_CD: int
    offset: int
    comment: bytes

    @classmethod
    def __init_raw__(cls, file: BinaryIO) -> 'CDEnd':
        raw = _read_exact(file, CD_END_SIZE, 'end of central directory')
        if raw[:4] != CD_END_SIGNATURE:
            raise FormatError('Bad end of central directory signature.')
        return cls(
            disk_num=_le(raw, 4, 2),
            disk_num_CD=_le(raw, 6, 2),
            total_entries=_le(raw, 8, 2),
            total_CD_entries=_le(raw, 10, 2),
            sizeof_CD=_le(raw, 12, 4),
            offset=_le(raw, 16, 4),
            comment=_read_exact(file, _le(raw, 20, 2), 'archive comment')
        )

    def encode(self) -> bytes:
        byte_str: bytes = CD_END_SIGNATURE
        byte_str += self.disk_num.to_bytes(2, 'little')
        byte_str += self.disk_num_CD.to_bytes(2, 'little')
        byte_str += self.total_entries.to_bytes(2, 'little')
        byte_str += self.total_CD_entries.to_bytes(2, 'little')
        byte_str += self.sizeof_CD.to_bytes(4, 'little')
        byte_str += self.offset.to_bytes(4, 'little')
        byte_str += len(self.comment).to_bytes(2, 'little')
        byte_str += self.comment
        return byte_str


@dataclass(frozen=True)
class CentralDirectory:
    """Parsed Central Directory of an archive. Entries keep their storage order.

    Names are not required to be unique. Lookup by name returns the first
    entry with that name, lookup by index always works.
    """

    entries: tuple[ArchiveEntry, ...]
    comment: bytes = b''
    total_entries: int = 0
    size: int = 0
    offset: int = 0

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @cached_property
    def _by_name(self) -> dict[bytes | str, ArchiveEntry]:
        names: dict[bytes | str, ArchiveEntry] = {}
        for entry in self.entries:
            names.setdefault(entry.raw_name, entry)
            names.setdefault(entry.filename, entry)
        return names

    def get(self, key: int | str | bytes) -> ArchiveEntry:
        """Return entry by index, decoded name or raw name.

        Raises EntryNotFound if there is no such entry.
        """
        if isinstance(key, int) and not isinstance(key, bool):
            if not -len(self.entries) <= key < len(self.entries):
                raise EntryNotFound(f'Entry index {key} is out of range.')
            return self.entries[key]
        if isinstance(key, (str, bytes)):
            try:
                return self._by_name[key]
            except KeyError:
                raise EntryNotFound(f'Entry {key!r} does not exist.') from None
        raise TypeError(f'Expected entry index or name, not {type(key).__name__}.')


def find_end_of_central_directory(file: BinaryIO) -> tuple[int, CDEnd]:
    """Locate End of Central Directory searching backwards from the end of ``file``.

    Only the last 22 + 65535 bytes are searched since the comment can't be longer.
    A candidate must have its comment end exactly at the end of the stream.
    Comment may itself contain such records, so the earliest candidate whose
    directory lies before it wins. If none does, the earliest one is returned
    and the caller reports the damage.

    Returns offset of the record and the record itself.
    """
    file_size = file.seek(0, io.SEEK_END)
    window = min(file_size, CD_END_SIZE + MAX_COMMENT_LENGTH)
    start = file_size - window
    file.seek(start)
    data = _read_exact(file, window, 'archive tail')

    candidates: list[int] = []
    pos = data.rfind(CD_END_SIGNATURE)
    while pos != -1:
        if pos + CD_END_SIZE <= len(data) and pos + CD_END_SIZE + _le(data, pos + 20, 2) == len(data):
            candidates.append(pos)
        pos = data.rfind(CD_END_SIGNATURE, 0, pos)
    if not candidates:
        raise FormatError('Trailer not found, file should be in .ZIP format.')

    candidates.reverse()
    for pos in candidates:
        if _le(data, pos + 16, 4) + _le(data, pos + 12, 4) <= start + pos:
            break
    else:
        pos = candidates[0]
    logger.debug('End of central directory found at %d (%d candidates)', start + pos, len(candidates))
    return start + pos, CDEnd.__init_raw__(io.BytesIO(data[pos:]))


def read_central_directory(file: BinaryIO) -> CentralDirectory:
    """Parse the whole Central Directory of ``file``.

    Either a complete directory is returned or an exception is raised.
    Raises FormatError if structure is corrupted and UnsupportedFeatureError
    for ZIP64 and multi-disk archives.
    """
    end_offset, endof_cd = find_end_of_central_directory(file)

    if INT32_MAX in (endof_cd.sizeof_CD, endof_cd.offset) \
            or INT16_MAX in (endof_cd.total_entries, endof_cd.total_CD_entries):
        raise UnsupportedFeatureError('ZIP64 archives are not supported.')
    if endof_cd.disk_num != 0 or endof_cd.disk_num_CD != 0 \
            or endof_cd.total_entries != endof_cd.total_CD_entries:
        raise UnsupportedFeatureError('Multi-disk archives are not supported.')
    if end_offset >= 20:
        file.seek(end_offset - 20)
        if file.read(4) == ZIP64_LOCATOR_SIGNATURE:
            raise UnsupportedFeatureError('ZIP64 archives are not supported.')

    if endof_cd.offset + endof_cd.sizeof_CD > end_offset:
        raise FormatError('Truncated directory.')

    file.seek(endof_cd.offset)
    data = file.read(endof_cd.sizeof_CD)
    if len(data) != endof_cd.sizeof_CD:
        raise FormatError('Truncated directory.')

    buffer = io.BytesIO(data)
    entries: list[ArchiveEntry] = []
    for _ in range(endof_cd.total_CD_entries):
        entry = ArchiveEntry.__init_raw__(buffer)
        if entry.unsupported_reason is None:
            # Sizes can be trusted only if they are not zip64 placeholders
            data_end = entry.header_offset + LOCAL_HEADER_SIZE + len(entry.raw_name) + entry.compressed_size
            if data_end > endof_cd.offset:
                raise FormatError(f'Corrupt directory: entry {entry.raw_name!r} points outside of the archive.')
        else:
            logger.warning('Entry %r is not readable: %s', entry.raw_name, entry.unsupported_reason)
        entries.append(entry)

    if buffer.tell() != endof_cd.sizeof_CD:
        raise FormatError('Corrupt directory: size does not match entry count.')

    logger.debug('Read %d entries from central directory at %d', len(entries), endof_cd.offset)
    return CentralDirectory(
        entries=tuple(entries),
        comment=endof_cd.comment,
        total_entries=endof_cd.total_CD_entries,
        size=endof_cd.sizeof_CD,
        offset=endof_cd.offset
    )
