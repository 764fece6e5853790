import io
from zlib import crc32

from zipflow.constants import CD_END_SIZE, LOCAL_HEADER_SIZE
from zipflow.zipfile._zipfile import ArchiveEntry, CDEnd, LocalHeader

LOREM: bytes = (
    b'Lorem ipsum dolor sit amet. Id eveniet omnis vel magnam molestiae eum maxime dolor ad ipsam '
    b'veritatis a voluptas expedita et galisum expedita est suscipit soluta. Et iure quasi nam ullam '
    b'eius et voluptatem galisum ea corporis pariatur et aliquid tenetur eum dolorum corporis hic '
    b'consequatur esse. Qui velit adipisci sed magni dolor id nobis eveniet non sunt ipsa rem nobis '
    b'nesciunt? Aut voluptas error hic rerum deserunt a sequi quidem ab quam cupiditate est deserunt.'
)


class NonSeekableSink:
    """Write-only stream like a pipe or a socket."""

    def __init__(self):
        self.buffer = io.BytesIO()

    def write(self, data) -> int:
        return self.buffer.write(data)

    def flush(self) -> None:
        pass

    def seekable(self) -> bool:
        return False

    def getvalue(self) -> bytes:
        return self.buffer.getvalue()


class NoSeekDeclared(io.BytesIO):
    """Stream that can seek but claims it can't."""

    def seekable(self) -> bool:
        return False


def raw_archive(
        name: bytes,
        data: bytes,
        *,
        method: int = 0,
        flags: int = 0,
        central_extra: bytes = b'',
        disk_number_start: int = 0,
        uncompressed: bytes | None = None
) -> bytes:
    """Single entry archive built directly from records. ``data`` is stored as is."""
    plain = data if uncompressed is None else uncompressed
    crc = crc32(plain)
    local = LocalHeader(20, flags, method, 0, 0x21, crc, len(data), len(plain), name, b'').encode()
    entry = ArchiveEntry(
        name, method, crc, len(data), len(plain), 0,
        flags=flags, extra=central_extra, disk_number_start=disk_number_start
    )
    cd = entry.encode()
    end = CDEnd(0, 0, 1, 1, len(cd), len(local) + len(data), b'').encode()
    return local + data + cd + end


def central_records(archive: bytes) -> list[int]:
    """Offsets of central directory records of an archive without comment."""
    end = len(archive) - CD_END_SIZE
    count = int.from_bytes(archive[end + 10:end + 12], 'little')
    pos = int.from_bytes(archive[end + 16:end + 20], 'little')
    offsets = []
    for _ in range(count):
        offsets.append(pos)
        lengths = [int.from_bytes(archive[pos + i:pos + i + 2], 'little') for i in (28, 30, 32)]
        pos += 46 + sum(lengths)
    return offsets


def data_offset(entry: ArchiveEntry) -> int:
    """Where entry data starts, assuming local extra field is empty."""
    return entry.header_offset + LOCAL_HEADER_SIZE + len(entry.raw_name)


def patch(archive: bytes, offset: int, value: bytes) -> bytes:
    return archive[:offset] + value + archive[offset + len(value):]
