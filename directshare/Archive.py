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

import os
import tarfile
import threading

from typing import Iterator

from directshare.Kernel import getLogger
from directshare.Settings import ARCHIVE_PIPE_CAPACITY

logger = getLogger(__name__)


class ArchiveError(IOError):
    """Raised on the consumer side when the archive producer failed mid-stream"""
    pass


class PipeClosedError(BrokenPipeError):
    """Raised on the producer side once the consumer has closed the pipe"""
    pass


class BoundedPipe:
    """
    Bounded in-memory byte channel between one producer thread and one consumer.

    write() blocks while `capacity` bytes are buffered, so memory use never exceeds
    the capacity no matter how large the archived folder is. The producer side is
    also a minimal write-only file object, which is all tarfile's stream mode needs.
    """

    def __init__(self, capacity: int = ARCHIVE_PIPE_CAPACITY):
        if capacity < 1:
            raise ValueError(f'Pipe capacity must be positive, got {capacity}')

        self.capacity = capacity
        self.buffer = bytearray()
        self.condition = threading.Condition()
        self.writerClosed = False
        self.readerClosed = False
        self.error = None

    def write(self, data) -> int:
        view = memoryview(data).cast('B')
        total = len(view)
        offset = 0

        with self.condition:
            if self.writerClosed:
                raise ValueError('Write to a pipe whose writer is closed')

            while offset < total:
                while not self.readerClosed and len(self.buffer) >= self.capacity:
                    self.condition.wait()

                if self.readerClosed:
                    raise PipeClosedError('Archive consumer closed the pipe')

                room = self.capacity - len(self.buffer)
                chunk = view[offset:offset + room]
                self.buffer += chunk
                offset += len(chunk)
                self.condition.notify_all()

        return total

    def flush(self):
        pass

    def read(self, size: int = -1) -> bytes:
        """
        Read up to `size` bytes, blocking until data is available.

        Returns:
            bytes: b'' once the producer finished cleanly

        Raises:
            ArchiveError: The producer closed the pipe with an error (after buffered bytes are drained)
        """
        with self.condition:
            while not self.buffer and not self.writerClosed and not self.readerClosed:
                self.condition.wait()

            if self.buffer:
                if size is None or size < 0:
                    size = len(self.buffer)

                data = bytes(self.buffer[:size])
                del self.buffer[:size]
                self.condition.notify_all()
                return data

            if self.error is not None:
                raise ArchiveError(f'Archive stream terminated: {self.error}') from self.error

            return b''

    def closeWriter(self, error: BaseException = None):
        with self.condition:
            self.writerClosed = True
            self.error = error
            self.condition.notify_all()

    def closeReader(self):
        with self.condition:
            self.readerClosed = True
            self.buffer.clear()
            self.condition.notify_all()


def _raiseWalkError(error):
    raise error


class TarArchiveProducer(threading.Thread):
    """Walk a folder and write it as a streaming tar archive into a BoundedPipe"""

    def __init__(self, dirPath: str, pipe: BoundedPipe, arcRoot: str):
        super().__init__(name=f'TarArchiveProducer[{arcRoot}]', daemon=True)
        self.dirPath = dirPath
        self.pipe = pipe
        self.arcRoot = arcRoot
        self.entries = 0

    def run(self):
        error = None

        try:
            with tarfile.open(fileobj=self.pipe, mode='w|', format=tarfile.PAX_FORMAT) as tar:
                self._writeTree(tar)
        except PipeClosedError:
            logger.info(f'Archive of {self.dirPath} abandoned by consumer after {self.entries} entries')
        except OSError as e:
            error = e
            logger.error(f'Archive of {self.dirPath} failed after {self.entries} entries: {e}')
        except Exception as e:
            error = e
            logger.exception(f'Unexpected error while archiving {self.dirPath}: {e}')
        else:
            logger.debug(f'Archive of {self.dirPath} completed, {self.entries} entries')
        finally:
            self.pipe.closeWriter(error)

    def _writeTree(self, tar):
        tar.add(self.dirPath, arcname=self.arcRoot, recursive=False)

        for root, dirs, files in os.walk(self.dirPath, onerror=_raiseWalkError):
            # Deterministic archive order
            dirs.sort()
            files.sort()

            relRoot = os.path.relpath(root, self.dirPath)
            if relRoot == os.curdir:
                arcBase = self.arcRoot
            else:
                arcBase = f"{self.arcRoot}/{relRoot.replace(os.sep, '/')}"

            for name in dirs + files:
                tar.add(os.path.join(root, name), arcname=f'{arcBase}/{name}', recursive=False)
                self.entries += 1


class ArchiveStream:
    """
    One folder download: a producer thread feeding a bounded pipe, consumed by iterChunks().

    Closing the stream (or dropping the iterChunks generator) closes the read side,
    which makes the producer stop at its next write.
    """

    def __init__(self, dirPath: str, arcRoot: str, capacity: int = ARCHIVE_PIPE_CAPACITY):
        self.dirPath = dirPath
        self.arcRoot = arcRoot
        self.pipe = BoundedPipe(capacity)
        self.producer = TarArchiveProducer(dirPath, self.pipe, arcRoot)

    def start(self):
        self.producer.start()
        return self

    def iterChunks(self, chunkSize: int) -> Iterator[bytes]:
        try:
            while True:
                chunk = self.pipe.read(chunkSize)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def close(self):
        self.pipe.closeReader()

    def join(self, timeout=None):
        self.producer.join(timeout)
        return not self.producer.is_alive()
