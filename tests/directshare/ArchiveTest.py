#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# DirectShare - Share local files and folders with short links
# Copyright (C) 2026 DirectShare contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import io
import os
import shutil
import tarfile
import tempfile
import threading
import time
import unittest

from unittest.mock import patch

from directshare.Archive import ArchiveError, ArchiveStream, BoundedPipe, PipeClosedError, TarArchiveProducer


def createTree(root):
    """Create a small folder tree, returns {relative path: bytes}"""
    files = {
        'a.txt': b'Hello World',
        'empty.bin': b'',
        'sub/b.bin': os.urandom(200 * 1024),
        'sub/deeper/c.txt': 'Unicode 檔案'.encode('utf-8'),
        '中文/d.txt': b'non-ascii directory',
    }

    for relPath, content in files.items():
        path = os.path.join(root, *relPath.split('/'))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'wb') as f:
            f.write(content)

    os.makedirs(os.path.join(root, 'emptyDir'))
    return files


class BoundedPipeTest(unittest.TestCase):

    def testReadWhatWasWritten(self):
        pipe = BoundedPipe(16)
        pipe.write(b'abc')
        pipe.write(bytearray(b'def'))
        pipe.closeWriter()

        self.assertEqual(pipe.read(4), b'abcd')
        self.assertEqual(pipe.read(), b'ef')
        self.assertEqual(pipe.read(), b'')

    def testInvalidCapacity(self):
        with self.assertRaises(ValueError):
            BoundedPipe(0)

    def testWriteBlocksWhenFull(self):
        pipe = BoundedPipe(8)
        finished = threading.Event()

        def writer():
            pipe.write(b'x' * 20)
            finished.set()

        thread = threading.Thread(target=writer, daemon=True)
        thread.start()

        # Only `capacity` bytes fit until the consumer reads
        self.assertFalse(finished.wait(0.3))
        self.assertLessEqual(len(pipe.buffer), 8)

        received = b''
        while len(received) < 20:
            received += pipe.read(5)

        self.assertTrue(finished.wait(2))
        self.assertEqual(received, b'x' * 20)

    def testWriteAfterReaderClosed(self):
        pipe = BoundedPipe(8)
        pipe.closeReader()

        with self.assertRaises(PipeClosedError):
            pipe.write(b'data')

        self.assertTrue(issubclass(PipeClosedError, BrokenPipeError))

    def testClosingReaderWakesBlockedWriter(self):
        pipe = BoundedPipe(4)
        errors = []

        def writer():
            try:
                pipe.write(b'y' * 100)
            except PipeClosedError as e:
                errors.append(e)

        thread = threading.Thread(target=writer, daemon=True)
        thread.start()
        time.sleep(0.1)

        pipe.closeReader()
        thread.join(2)

        self.assertFalse(thread.is_alive())
        self.assertEqual(len(errors), 1)

    def testErrorAfterBufferedBytes(self):
        pipe = BoundedPipe(16)
        pipe.write(b'partial')
        pipe.closeWriter(PermissionError('denied'))

        self.assertEqual(pipe.read(), b'partial')
        with self.assertRaises(ArchiveError) as context:
            pipe.read()

        self.assertIsInstance(context.exception.__cause__, PermissionError)


class TarArchiveTest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.mkdtemp()
        self.sourceDir = os.path.join(self.tempDir, 'shared')
        os.makedirs(self.sourceDir)
        self.files = createTree(self.sourceDir)

    def tearDown(self):
        shutil.rmtree(self.tempDir, ignore_errors=True)

    def _readArchive(self, stream, chunkSize=1000):
        return b''.join(stream.iterChunks(chunkSize))

    def testRoundTrip(self):
        stream = ArchiveStream(self.sourceDir, 'shared', capacity=4096).start()
        data = self._readArchive(stream)

        self.assertTrue(stream.join(5))
        self.assertEqual(len(data) % tarfile.RECORDSIZE, 0)

        contents = {}
        with tarfile.open(fileobj=io.BytesIO(data), mode='r:') as tar:
            names = tar.getnames()
            for member in tar.getmembers():
                if member.isfile():
                    contents[member.name] = tar.extractfile(member).read()
                elif member.name == 'shared/emptyDir':
                    self.assertTrue(member.isdir())

        self.assertEqual(names[0], 'shared')
        self.assertIn('shared/emptyDir', names)

        for relPath, content in self.files.items():
            with self.subTest(path=relPath):
                self.assertEqual(contents[f'shared/{relPath}'], content)

    def testDeterministicOrder(self):
        first = self._readArchive(ArchiveStream(self.sourceDir, 'shared').start())
        second = self._readArchive(ArchiveStream(self.sourceDir, 'shared').start())

        namesOf = lambda data: tarfile.open(fileobj=io.BytesIO(data), mode='r:').getnames()
        self.assertEqual(namesOf(first), namesOf(second))

    def testConsumerCloseStopsProducer(self):
        stream = ArchiveStream(self.sourceDir, 'shared', capacity=1024).start()
        chunks = stream.iterChunks(512)

        self.assertTrue(next(chunks))
        chunks.close()

        self.assertTrue(stream.join(5), 'Producer should stop once the consumer is gone')
        self.assertTrue(stream.pipe.readerClosed)

    def testProducerErrorTruncatesStream(self):
        pipe = BoundedPipe(1024)
        producer = TarArchiveProducer(self.sourceDir, pipe, 'shared')

        originalAdd = tarfile.TarFile.add
        calls = []

        def failingAdd(tar, name, *args, **kwargs):
            calls.append(name)
            if len(calls) == 3:
                raise PermissionError(13, 'Permission denied', name)
            return originalAdd(tar, name, *args, **kwargs)

        with patch.object(tarfile.TarFile, 'add', failingAdd):
            producer.start()

            received = b''
            with self.assertRaises(ArchiveError):
                while True:
                    chunk = pipe.read(256)
                    if not chunk:
                        break
                    received += chunk

            producer.join(5)

        self.assertFalse(producer.is_alive())
        self.assertIsInstance(pipe.error, PermissionError)
        self.assertEqual(producer.entries, 1)

    def testUnreadableSubdirectoryTruncatesStream(self):
        with patch('directshare.Archive.os.walk', side_effect=PermissionError(13, 'Permission denied')):
            stream = ArchiveStream(self.sourceDir, 'shared').start()
            with self.assertRaises(ArchiveError):
                self._readArchive(stream)

        self.assertTrue(stream.join(5))


if __name__ == '__main__':
    unittest.main()
