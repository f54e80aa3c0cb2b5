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
import stat

from typing import Iterator, Optional

from directshare.Archive import ArchiveStream
from directshare.Kernel import getLogger
from directshare.Settings import ARCHIVE_PIPE_CAPACITY, FALLBACK_FILENAME

logger = getLogger(__name__)


class UnsupportedSourceError(ValueError):
    """Raised when a registered path is neither a regular file nor a directory"""

    def __init__(self, message: str, path: str = None):
        super().__init__(message)
        self.path = path


def getContentName(path: str) -> str:
    """Download name of a path: its final component, FALLBACK_FILENAME when it has none (e.g. '/' or '..')"""
    name = os.path.basename(os.path.normpath(path)) if path else ''
    if name in ('', os.curdir, os.pardir):
        return FALLBACK_FILENAME
    return name


class SourceReader:
    """Unified reading interface for files and folders (as tar streams)"""
    contentName: str  # Download filename (e.g., file.bin / folder.tar)
    contentType: str  # MIME type
    size: Optional[int]  # Total content length (None if unknown)

    @classmethod
    def build(cls, path: str) -> 'SourceReader':
        """
        Factory method to create appropriate SourceReader

        Args:
            path: File or directory path

        Returns:
            SourceReader: Appropriate reader for the path type

        Raises:
            OSError: The path cannot be stat'ed
            UnsupportedSourceError: The path is a FIFO, socket, device...
        """
        st = os.stat(path)

        if stat.S_ISDIR(st.st_mode):
            return TarDirSourceReader(path)

        if stat.S_ISREG(st.st_mode):
            return FileSourceReader(path, size=st.st_size)

        raise UnsupportedSourceError(f'Not a regular file or directory: {path}', path=path)

    def open(self):
        """Acquire what iterChunks() needs. Failures here surface before any byte is sent."""
        pass

    def iterChunks(self, chunkSize: int) -> Iterator[bytes]:
        raise NotImplementedError

    def close(self):
        pass

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, excType, excVal, excTb):
        self.close()


class FileSourceReader(SourceReader):
    """SourceReader implementation for regular files"""

    def __init__(self, path: str, size: int = None):
        self.path = path
        self.contentName = getContentName(path)
        self.contentType = "application/octet-stream"
        self.size = os.path.getsize(path) if size is None else size
        self.fileObj = None

    def open(self):
        if self.fileObj is None:
            self.fileObj = open(self.path, "rb")

    def iterChunks(self, chunkSize: int) -> Iterator[bytes]:
        """Yield at most `size` bytes, bytes appended after the stat are not sent."""
        self.open()

        remaining = self.size
        try:
            while remaining > 0:
                chunk = self.fileObj.read(min(chunkSize, remaining))
                if not chunk:
                    logger.warning(f'{self.path} shrank while reading, {remaining} bytes missing')
                    break
                remaining -= len(chunk)
                yield chunk
        finally:
            self.close()

    def close(self):
        if self.fileObj is not None:
            self.fileObj.close()
            self.fileObj = None


class TarDirSourceReader(SourceReader):
    """
    SourceReader implementation for folders, streamed as an uncompressed tar archive.

    The archive is produced while it is sent, so the size is unknown and memory use
    is bounded by the pipe capacity.
    """

    def __init__(self, dirPath: str, capacity: int = ARCHIVE_PIPE_CAPACITY):
        self.path = dirPath
        self.arcRoot = getContentName(dirPath)
        self.contentName = f'{self.arcRoot}.tar'
        self.contentType = "application/x-tar"
        self.size = None
        self.capacity = capacity
        self.stream = None

    def open(self):
        if self.stream is not None:
            return

        # Fail early on unreadable folders, before the response is committed
        with os.scandir(self.path):
            pass

        self.stream = ArchiveStream(self.path, self.arcRoot, self.capacity).start()
        logger.debug(f'Started archiving {self.path} as {self.contentName}')

    def iterChunks(self, chunkSize: int) -> Iterator[bytes]:
        self.open()
        yield from self.stream.iterChunks(chunkSize)

    def close(self):
        if self.stream is not None:
            self.stream.close()
