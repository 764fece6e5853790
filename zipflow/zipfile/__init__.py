from ._zip_algorythms import Codec, Decoder, Encoder, get_codec, is_registered, register_codec
from ._zipfile import ArchiveEntry, CentralDirectory, read_central_directory
from .utils.checksum import Crc32, crc32_update
from .zipfile import NewZipFile, ZipEntryStream, ZipEntryWriter, ZipFile
