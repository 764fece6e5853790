"""Streaming reader and writer of zip archives."""
from .constants import *
from .exceptions import *
from .zipfile import (
    ArchiveEntry, CentralDirectory, Codec, Crc32, Decoder, Encoder, NewZipFile,
    ZipEntryStream, ZipEntryWriter, ZipFile, crc32_update, get_codec,
    is_registered, read_central_directory, register_codec
)

__version__ = '0.2.0'
