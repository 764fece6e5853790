"""CRC-32 used by zip entries (reflected polynomial 0xEDB88320)."""
from zlib import crc32


def crc32_update(crc: int, data: bytes) -> int:
    """Continue ``crc`` over ``data``. Start with 0 for a new stream."""
    return crc32(data, crc) & 0xFFFFFFFF


class Crc32:
    """Running CRC-32 and byte count of a stream.

    Usage:
        c = Crc32()
        c.update(chunk1)
        c.update(chunk2)
        c.value, c.size
    """

    def __init__(self):
        self.value: int = 0
        self.size: int = 0

    def update(self, data: bytes) -> None:
        self.value = crc32_update(self.value, data)
        self.size += len(data)
