import io
import unittest
import zlib
from datetime import datetime

from zipflow import ZipFile
from zipflow.constants import *
from zipflow.exceptions import *
from zipflow.zipfile._zipfile import DataDescriptor, LocalHeader

from .helpers import LOREM, NonSeekableSink


class TestState(unittest.TestCase):

    def setUp(self) -> None:
        self.buf = io.BytesIO()
        self.z = ZipFile.new(self.buf)

    def test_entry_in_progress(self) -> None:
        self.z.start_entry('a.txt')
        written = self.buf.getvalue()

        self.assertRaises(EntryInProgress, lambda: self.z.start_entry('b.txt'))
        self.assertRaises(EntryInProgress, lambda: self.z.write_entry('b.txt', b'data'))
        self.assertRaises(EntryInProgress, lambda: self.z.finish_archive())
        self.assertEqual(written, self.buf.getvalue())

        # Writer is still usable
        self.z.write(b'data')
        self.z.finish_entry()
        self.z.finish_archive()
        with ZipFile.open(self.buf) as z:
            self.assertEqual(b'data', z.read('a.txt'))

    def test_writer_closed(self) -> None:
        self.z.write_entry('a.txt', b'data')
        self.z.finish_archive()
        self.assertTrue(self.z.finished)
        written = self.buf.getvalue()

        self.assertRaises(WriterClosed, lambda: self.z.start_entry('b.txt'))
        self.assertRaises(WriterClosed, lambda: self.z.write_entry('b.txt', b'data'))
        self.assertRaises(WriterClosed, lambda: self.z.write(b'data'))
        self.assertRaises(WriterClosed, lambda: self.z.finish_entry())
        self.assertRaises(WriterClosed, lambda: self.z.finish_archive())
        self.assertEqual(written, self.buf.getvalue())

    def test_no_open_entry(self) -> None:
        self.assertRaises(UsageError, lambda: self.z.write(b'data'))
        self.assertRaises(UsageError, lambda: self.z.finish_entry())
        self.assertEqual(b'', self.buf.getvalue())

    def test_stale_lease(self) -> None:
        lease = self.z.start_entry('a.txt')
        self.assertEqual(b'a.txt', lease.name)
        self.assertEqual(4, lease.write(b'data'))
        entry = lease.close()
        self.assertTrue(lease.closed)
        self.assertEqual(4, entry.uncompressed_size)

        self.z.start_entry('b.txt')
        self.assertRaises(UsageError, lambda: lease.write(b'more'))
        self.assertRaises(UsageError, lambda: lease.close())
        self.z.write(b'other')
        self.z.finish_entry()
        self.z.finish_archive()

        with ZipFile.open(self.buf) as z:
            self.assertEqual(b'data', z.read('a.txt'))
            self.assertEqual(b'other', z.read('b.txt'))

    def test_exception_leaves_archive_unfinished(self) -> None:
        buf = io.BytesIO()
        with self.assertLogs('zipflow', level='WARNING'):
            with self.assertRaises(RuntimeError):
                with ZipFile.new(buf) as z:
                    z.write_entry('a.txt', b'data')
                    with z.start_entry('b.txt') as entry:
                        entry.write(b'half')
                        raise RuntimeError('Interrupted')

        self.assertTrue(z.finished)
        self.assertRaises(WriterClosed, lambda: z.finish_archive())
        self.assertRaises(FormatError, lambda: ZipFile.open(io.BytesIO(buf.getvalue())))

    def test_lease_after_abandoned_archive(self) -> None:
        buf = io.BytesIO()
        with self.assertLogs('zipflow', level='WARNING'):
            with self.assertRaises(RuntimeError):
                with ZipFile.new(buf) as z:
                    lease = z.start_entry('a.txt', compression=STORED)
                    lease.write(b'before')
                    raise RuntimeError('Interrupted')
        written = buf.getvalue()

        self.assertTrue(lease.closed)
        self.assertRaises(WriterClosed, lambda: lease.write(b'after'))
        self.assertRaises(WriterClosed, lambda: lease.close())
        self.assertRaises(WriterClosed, lambda: z.write(b'after'))
        self.assertRaises(WriterClosed, lambda: z.finish_entry())
        self.assertEqual(written, buf.getvalue())

    def test_context_manager_finishes_entry(self) -> None:
        with ZipFile.new(self.buf) as z:
            z.start_entry('a.txt').write(b'data')
        with ZipFile.open(self.buf) as z:
            self.assertEqual(b'data', z.read('a.txt'))


class TestValidation(unittest.TestCase):

    def setUp(self) -> None:
        self.buf = io.BytesIO()
        self.z = ZipFile.new(self.buf)

    def assertNothingWritten(self, func) -> None:
        written = self.buf.getvalue()
        func()
        self.assertEqual(written, self.buf.getvalue())

    def test_comment_length(self) -> None:
        long_comment = 'x' * (MAX_COMMENT_LENGTH + 1)
        self.assertRaises(UsageError, lambda: ZipFile.new(io.BytesIO(), comment=long_comment))
        self.assertNothingWritten(
            lambda: self.assertRaises(UsageError, lambda: self.z.write_entry('a.txt', b'', comment=long_comment))
        )
        self.assertNothingWritten(
            lambda: self.assertRaises(UsageError, lambda: self.z.finish_archive(comment=long_comment))
        )
        self.assertFalse(self.z.finished)
        self.z.finish_archive(comment='x' * MAX_COMMENT_LENGTH)

        with ZipFile.open(self.buf) as z:
            self.assertEqual(b'x' * MAX_COMMENT_LENGTH, z.comment)

    def test_unknown_compression(self) -> None:
        self.assertNothingWritten(
            lambda: self.assertRaises(UnsupportedFeatureError, lambda: self.z.start_entry('a.txt', compression='LZMA'))
        )
        self.assertNothingWritten(
            lambda: self.assertRaises(UnsupportedFeatureError, lambda: self.z.write_entry('a.txt', b'', compression='LZMA'))
        )

    def test_unknown_level(self) -> None:
        for compression in (DEFLATE, BZIP, ZSTANDARD):
            with self.subTest(compression=compression):
                self.assertNothingWritten(
                    lambda: self.assertRaises(
                        ValueError, lambda: self.z.start_entry('a.txt', compression=compression, level='Ultra')
                    )
                )
                self.assertNothingWritten(
                    lambda: self.assertRaises(
                        ValueError, lambda: self.z.write_entry('a.txt', b'', compression=compression, level='Ultra')
                    )
                )
        self.z.write_entry('a.txt', b'fine')
        self.assertEqual(1, len(self.z.entries))

    def test_names(self) -> None:
        self.assertRaises(UsageError, lambda: self.z.write_entry('', b''))
        self.assertRaises(UsageError, lambda: self.z.write_entry(b'', b''))
        self.assertRaises(UsageError, lambda: self.z.write_entry('x' * (INT16_MAX + 1), b''))
        self.assertEqual(b'', self.buf.getvalue())

    def test_extra_field(self) -> None:
        zip64_extra = b'\x01\x00\x08\x00' + bytes(8)
        self.assertRaises(UnsupportedFeatureError, lambda: self.z.write_entry('a.txt', b'', extra=zip64_extra))
        self.assertRaises(UsageError, lambda: self.z.write_entry('a.txt', b'', extra=bytes(INT16_MAX + 1)))
        self.assertEqual(b'', self.buf.getvalue())

        custom_extra = b'\xfe\xca\x04\x00data'
        entry = self.z.write_entry('a.txt', b'data', extra=custom_extra)
        self.z.finish_archive()
        with ZipFile.open(self.buf) as z:
            self.assertEqual(custom_extra, z.get_entry(0).extra)
            self.assertEqual(entry, z.get_entry(0))
            self.assertEqual(b'data', z.read(0))


class TestLayout(unittest.TestCase):

    def test_seekable_sink_patches_header(self) -> None:
        buf = io.BytesIO()
        with ZipFile.new(buf) as z:
            with z.start_entry('lorem.txt', compression=DEFLATE) as entry:
                entry.write(LOREM)
            written = z.entries[0]

        header = LocalHeader.__init_raw__(io.BytesIO(buf.getvalue()))
        self.assertFalse(header.flags & FLAG_DATA_DESCRIPTOR)
        self.assertEqual(zlib.crc32(LOREM), header.crc)
        self.assertEqual(len(LOREM), header.uncompressed_size)
        self.assertEqual(written.compressed_size, header.compressed_size)
        self.assertEqual(written.local_header(), header)

        # Central directory follows the data directly
        with ZipFile.open(buf) as z:
            self.assertEqual(header.size + written.compressed_size, z.directory.offset)

    def test_non_seekable_sink_appends_descriptor(self) -> None:
        sink = NonSeekableSink()
        with ZipFile.new(sink) as z:
            with z.start_entry('lorem.txt', compression=STORED) as entry:
                entry.write(LOREM)

        data = sink.getvalue()
        stream = io.BytesIO(data)
        header = LocalHeader.__init_raw__(stream)
        self.assertTrue(header.flags & FLAG_DATA_DESCRIPTOR)
        self.assertEqual((0, 0, 0), (header.crc, header.compressed_size, header.uncompressed_size))

        self.assertEqual(LOREM, stream.read(len(LOREM)))
        self.assertEqual(DATA_DESCRIPTOR_SIGNATURE, data[stream.tell():stream.tell() + 4])
        descriptor = DataDescriptor.__init_raw__(stream)
        self.assertEqual(DataDescriptor(zlib.crc32(LOREM), len(LOREM), len(LOREM)), descriptor)
        self.assertEqual(CD_HEADER_SIGNATURE, data[stream.tell():stream.tell() + 4])

    def test_stream_with_prefix(self) -> None:
        buf = io.BytesIO()
        buf.write(b'#!/bin/prefix\n')
        with ZipFile.new(buf) as z:
            first = z.write_entry('a.txt', b'hello')
            with z.start_entry('b.txt') as entry:
                entry.write(LOREM)
        self.assertEqual(14, first.header_offset)

        with ZipFile.open(buf) as z:
            self.assertEqual(b'hello', z.read('a.txt'))
            self.assertEqual(LOREM, z.read('b.txt'))

    def test_entry_options(self) -> None:
        buf = io.BytesIO()
        with ZipFile.new(buf, encoding='cp437') as z:
            folder = z.write_entry('folder/', b'', compression=BZIP)
            legacy = z.write_entry('café.txt', b'data', comment='note')
            old = z.write_entry('old.txt', b'data', last_mod_time=datetime(1970, 1, 1))

        self.assertEqual(0, folder.compression_method)
        self.assertEqual(20, folder.version_needed_to_extract)
        self.assertEqual(b'caf\x82.txt', legacy.raw_name)
        self.assertFalse(legacy.is_utf8)
        self.assertEqual(datetime(1980, 1, 1), old.last_mod_time)

        with ZipFile.open(buf) as z:
            self.assertEqual(['folder/', 'café.txt', 'old.txt'], z.namelist())
            self.assertEqual('note', z.get_entry(1).comment)

    def test_utf8_comment(self) -> None:
        buf = io.BytesIO()
        with ZipFile.new(buf) as z:
            entry = z.write_entry('a.txt', b'data', comment='привет')
        self.assertTrue(entry.is_utf8)
        with ZipFile.open(buf) as z:
            self.assertEqual('привет', z.get_entry('a.txt').comment)

    def test_version_needed(self) -> None:
        buf = io.BytesIO()
        with ZipFile.new(buf) as z:
            versions = [
                z.write_entry(name, b'data', compression=compression).version_needed_to_extract
                for name, compression in (('s', STORED), ('d', DEFLATE), ('b', BZIP), ('z', ZSTANDARD))
            ]
        self.assertEqual([10, 20, 46, 63], versions)


if __name__ == '__main__':
    unittest.main()
