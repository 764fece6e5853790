"""Constants with names of possible compressions and zip structure values.

Only names of registered algorithms can be used to write entries.
"""
from typing import Literal, TypeAlias

STORED: str = 'Stored'
DEFLATE: str = 'Deflate'
BZIP: str = 'BZIP2'
ZSTANDARD: str = 'Zstandard'
UNSUPPORTED: str = 'Unsupported'

# Compression levels
FAST: str = 'Fast'
NORMAL: str = 'Normal'
MAXIMUM: str = 'Maximum'

ZipCompressions: TypeAlias = Literal['Stored', 'Deflate', 'BZIP2', 'Zstandard']
ZipLevels: TypeAlias = Literal['Fast', 'Normal', 'Maximum']

ZIP_COMPRESSION_FROM_STR: dict[str, int] = {
    STORED: 0,
    DEFLATE: 8,
    BZIP: 12,
    ZSTANDARD: 93,
}

# Signatures
LOCAL_HEADER_SIGNATURE: bytes = b'PK\x03\x04'
CD_HEADER_SIGNATURE: bytes = b'PK\x01\x02'
CD_END_SIGNATURE: bytes = b'PK\x05\x06'
DATA_DESCRIPTOR_SIGNATURE: bytes = b'PK\x07\x08'
ZIP64_LOCATOR_SIGNATURE: bytes = b'PK\x06\x07'

# Fixed sizes of records including signatures
LOCAL_HEADER_SIZE: int = 30
CD_HEADER_SIZE: int = 46
CD_END_SIZE: int = 22
MAX_COMMENT_LENGTH: int = 65_535

# General purpose bit flag
FLAG_ENCRYPTED: int = 0x0001
FLAG_LEVEL_MAXIMUM: int = 0x0002
FLAG_LEVEL_FAST: int = 0x0004
FLAG_DATA_DESCRIPTOR: int = 0x0008
FLAG_STRONG_ENCRYPTION: int = 0x0040
FLAG_UTF8: int = 0x0800  # Language encoding flag (EFS)

# Size and offset fields equal to this value are stored in zip64 extra field.
INT32_MAX: int = 4_294_967_295
INT16_MAX: int = 65_535
ZIP64_EXTRA_ID: int = 0x0001

# External attributes (MS-DOS)
ATTR_DIRECTORY: int = 0x10
ATTR_ARCHIVE: int = 0x20

VERSION_MADE_BY: int = 63
READ_CHUNK_SIZE: int = 64 * 1024
