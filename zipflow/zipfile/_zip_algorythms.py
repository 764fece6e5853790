import bz2
import zlib
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional

import deflate
import zstandard

from ..constants import *
from ..exceptions import *

# Native levels of each algorithm for FAST, NORMAL and MAXIMUM.
ZLIB_LEVELS: dict[str, int] = {FAST: 1, NORMAL: 6, MAXIMUM: 9}
LIBDEFLATE_LEVELS: dict[str, int] = {FAST: 3, NORMAL: 6, MAXIMUM: 12}
BZIP_LEVELS: dict[str, int] = {FAST: 1, NORMAL: 9, MAXIMUM: 9}
ZSTD_LEVELS: dict[str, int] = {FAST: 1, NORMAL: 3, MAXIMUM: 19}


def _native_level(level: str, levels: dict[str, int]) -> int:
    try:
        return levels[level]
    except KeyError:
        raise ValueError(f'Unknown compression level {level}.') from None


class Encoder:
    """Compress bytes as they arrive and push them into ``sink``.

    Subclasses implement ``_compress`` and ``_flush``. ``compressed_size``
    is the number of bytes this encoder has written to the sink.
    """

    def __init__(self, sink: BinaryIO):
        self._sink: BinaryIO = sink
        self.compressed_size: int = 0

    def _emit(self, data: bytes) -> None:
        if data:
            self._sink.write(data)
            self.compressed_size += len(data)

    def write(self, data: bytes) -> None:
        self._emit(self._compress(data))

    def flush(self) -> None:
        """Finish the compressed stream. Encoder can't be used afterwards."""
        self._emit(self._flush())

    def _compress(self, data: bytes) -> bytes:
        raise NotImplementedError

    def _flush(self) -> bytes:
        raise NotImplementedError


class StoredEncoder(Encoder):

    def __init__(self, sink: BinaryIO, level: str = NORMAL):
        super().__init__(sink)

    def _compress(self, data: bytes) -> bytes:
        return data

    def _flush(self) -> bytes:
        return b''


class DeflateEncoder(Encoder):

    def __init__(self, sink: BinaryIO, level: str = NORMAL):
        super().__init__(sink)
        # Negative wbits produce raw deflate stream without zlib header
        self._c = zlib.compressobj(_native_level(level, ZLIB_LEVELS), zlib.DEFLATED, -15)

    def _compress(self, data: bytes) -> bytes:
        return self._c.compress(data)

    def _flush(self) -> bytes:
        return self._c.flush()


class BzipEncoder(Encoder):

    def __init__(self, sink: BinaryIO, level: str = NORMAL):
        super().__init__(sink)
        self._c = bz2.BZ2Compressor(_native_level(level, BZIP_LEVELS))

    def _compress(self, data: bytes) -> bytes:
        return self._c.compress(data)

    def _flush(self) -> bytes:
        return self._c.flush()


class ZstdEncoder(Encoder):

    def __init__(self, sink: BinaryIO, level: str = NORMAL):
        super().__init__(sink)
        self._c = zstandard.ZstdCompressor(level=_native_level(level, ZSTD_LEVELS)).compressobj()

    def _compress(self, data: bytes) -> bytes:
        return self._c.compress(data)

    def _flush(self) -> bytes:
        return self._c.flush()


class Decoder:
    """Expose decompressed bytes of ``source`` on demand.

    ``source`` must return at most the requested amount of compressed bytes
    and ``b''`` once the entry's compressed data is spent. ``read`` returns
    ``b''`` only when decompression is complete.
    """

    def __init__(self, source: BinaryIO):
        self._source: BinaryIO = source

    def read(self, size: int) -> bytes:
        raise NotImplementedError


class StoredDecoder(Decoder):

    def read(self, size: int) -> bytes:
        return self._source.read(size)


class DeflateDecoder(Decoder):

    def __init__(self, source: BinaryIO):
        super().__init__(source)
        self._d = zlib.decompressobj(-15)
        self._started: bool = False

    def read(self, size: int) -> bytes:
        while not self._d.eof:
            chunk = self._d.unconsumed_tail
            if not chunk:
                chunk = self._source.read(READ_CHUNK_SIZE)
                if not chunk and not self._started:
                    # Some archivers store empty files as zero-length deflate data
                    return b''
                self._started = True
            try:
                # Empty chunk drains output still pending inside the decompressor
                data = self._d.decompress(chunk, size)
            except zlib.error as e:
                raise FormatError(f'Deflate stream is corrupted: {e}') from e
            if data:
                return data
            if not chunk and not self._d.eof:
                raise FormatError('Deflate stream is truncated.')
        return b''


class BzipDecoder(Decoder):

    def __init__(self, source: BinaryIO):
        super().__init__(source)
        self._d = bz2.BZ2Decompressor()

    def read(self, size: int) -> bytes:
        while not self._d.eof:
            chunk = b''
            if self._d.needs_input:
                chunk = self._source.read(READ_CHUNK_SIZE)
                if not chunk:
                    raise FormatError('BZIP2 stream is truncated.')
            try:
                data = self._d.decompress(chunk, size)
            except OSError as e:
                raise FormatError(f'BZIP2 stream is corrupted: {e}') from e
            if data:
                return data
        return b''


class ZstdDecoder(Decoder):

    def __init__(self, source: BinaryIO):
        super().__init__(source)
        self._reader = zstandard.ZstdDecompressor().stream_reader(
            source, read_size=READ_CHUNK_SIZE, closefd=False
        )

    def read(self, size: int) -> bytes:
        try:
            return self._reader.read(size)
        except zstandard.ZstdError as e:
            raise FormatError(f'Zstandard stream is corrupted: {e}') from e


def _stored_compress(data: bytes, level: str) -> bytes:
    return data

def _deflate_compress(data: bytes, level: str) -> bytes:
    return deflate.deflate_compress(data, _native_level(level, LIBDEFLATE_LEVELS))

def _bzip_compress(data: bytes, level: str) -> bytes:
    return bz2.compress(data, _native_level(level, BZIP_LEVELS))

def _zstd_compress(data: bytes, level: str) -> bytes:
    return zstandard.compress(data, _native_level(level, ZSTD_LEVELS))


@dataclass(frozen=True)
class Codec:
    """Compression algorithm registered for a zip method code.

    Attributes:
        method (`int`): Method code stored in headers.
        name (`str`): Name of the method, see constants.
        version_needed (`int`): Minimal zip version required to extract.
        encoder: Factory ``(sink, level) -> Encoder``.
        decoder: Factory ``(source) -> Decoder``.
        compress: Optional one-shot ``(data, level) -> bytes`` used when
        the whole entry is available at once.
    """

    method: int
    name: str
    version_needed: int
    encoder: Callable[[BinaryIO, str], Encoder]
    decoder: Callable[[BinaryIO], Decoder]
    compress: Optional[Callable[[bytes, str], bytes]] = None


_CODECS: dict[int, Codec] = {}


def register_codec(codec: Codec) -> None:
    """Register ``codec`` for its method code, replacing any previous one."""
    _CODECS[codec.method] = codec


def is_registered(method: int) -> bool:
    return method in _CODECS


def get_codec(method: int | str) -> Codec:
    """Return codec for method code or method name.

    Raises UnsupportedFeatureError if nothing is registered for it.
    """
    if isinstance(method, str):
        for codec in _CODECS.values():
            if codec.name == method:
                return codec
        raise UnsupportedFeatureError(f"Unknown compression method '{method}'.")
    try:
        return _CODECS[method]
    except KeyError:
        raise UnsupportedFeatureError(f'Compression method {method} is not supported.') from None


def method_name(method: int) -> str:
    """Name of a registered method, 'Unsupported' otherwise."""
    codec = _CODECS.get(method)
    return codec.name if codec is not None else 'Unsupported'


def level_to_flags(method: int, level: str) -> int:
    """General purpose bits 1 and 2 describing deflate ``level``."""
    if method != ZIP_COMPRESSION_FROM_STR[DEFLATE]:
        return 0
    if level == FAST:
        return FLAG_LEVEL_FAST
    if level == MAXIMUM:
        return FLAG_LEVEL_MAXIMUM
    return 0


def level_from_flags(method: int, flags: int) -> str:
    if method != ZIP_COMPRESSION_FROM_STR[DEFLATE]:
        return NORMAL
    match flags & (FLAG_LEVEL_MAXIMUM | FLAG_LEVEL_FAST):
        case 0:
            return NORMAL
        case 0x0002:
            return MAXIMUM
        case _:  # Fast and super fast
            return FAST


register_codec(Codec(0, STORED, 10, StoredEncoder, StoredDecoder, _stored_compress))
register_codec(Codec(8, DEFLATE, 20, DeflateEncoder, DeflateDecoder, _deflate_compress))
register_codec(Codec(12, BZIP, 46, BzipEncoder, BzipDecoder, _bzip_compress))
register_codec(Codec(93, ZSTANDARD, 63, ZstdEncoder, ZstdDecoder, _zstd_compress))
