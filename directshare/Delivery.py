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

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple
from urllib.parse import quote

from directshare.Kernel import getLogger
from directshare.Reader import SourceReader, UnsupportedSourceError
from directshare.Registry import PathMap
from directshare.Settings import TRANSFER_CHUNK_SIZE

logger = getLogger(__name__)


def getContentDisposition(name: str) -> str:
    """Attachment header value, `filename*` (RFC 6266) carries the exact UTF-8 name."""
    quotedName = quote(name)
    return f"attachment; filename={quotedName}; filename*=UTF-8''{quotedName}"


@dataclass
class ResolvedRequest:
    remoteAddr: str
    method: str
    keyPath: str
    resolvedFsPath: Optional[str] = None

    def __str__(self):
        return f'{self.method} /{self.keyPath} from {self.remoteAddr}'


@dataclass
class Response:
    """
    What the connection handler has to write back.

    `body` is an iterable of byte chunks. When `closeConnection` is set the body has no
    Content-Length and ends with the connection.
    """
    status: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: Iterable[bytes] = ()
    closeConnection: bool = False
    reader: Optional[SourceReader] = None
    request: Optional[ResolvedRequest] = None

    def getHeader(self, name):
        for key, value in self.headers:
            if key.lower() == name.lower():
                return value
        return None

    def close(self):
        if self.reader is not None:
            self.reader.close()


class DeliveryEngine:
    """Turn a request line into a response: resolve the key, then dispatch on file or folder"""

    def __init__(self, pathMap: PathMap, defaultFile: str = None, chunkSize: int = TRANSFER_CHUNK_SIZE):
        self.pathMap = pathMap
        self.defaultFile = defaultFile
        self.chunkSize = chunkSize

    def handle(self, remoteAddr, method: str, rawPath: str) -> Response:
        if method != 'GET':
            logger.info(f'Rejected {method} {rawPath} from {remoteAddr}')
            return self.notFound()

        keyPath = rawPath.split('?', 1)[0]
        if keyPath.startswith('/'):
            keyPath = keyPath[1:]

        logger.info(f'Received path: {keyPath} from {remoteAddr}')

        filePath = self.pathMap.resolve(keyPath)
        request = ResolvedRequest(remoteAddr, method, keyPath, filePath)
        if filePath is None:
            return self.notFound(request)

        return self.deliver(request)

    def deliver(self, request: ResolvedRequest) -> Response:
        filePath = request.resolvedFsPath

        try:
            reader = SourceReader.build(filePath)
        except (UnsupportedSourceError, OSError) as e:
            logger.warning(f'Could not deliver file registered {request.keyPath} -> {filePath}. {e}')
            return self.notFound(request)

        try:
            reader.open()
        except OSError as e:
            logger.warning(f'Could not deliver file registered {request.keyPath} -> {filePath}. {e}')
            reader.close()
            return self.notFound(request)

        headers = [
            ('Content-Type', reader.contentType),
            ('Content-Disposition', getContentDisposition(reader.contentName)),
        ]

        if reader.size is not None:
            headers.append(('Content-Length', str(reader.size)))

        return Response(
            200,
            headers,
            reader.iterChunks(self.chunkSize),
            closeConnection=reader.size is None,
            reader=reader,
            request=request,
        )

    def notFound(self, request: ResolvedRequest = None) -> Response:
        body = self._readDefaultFile()
        return Response(404, [('Content-Length', str(len(body)))], [body] if body else [], request=request)

    def _readDefaultFile(self) -> bytes:
        if not self.defaultFile:
            return b''

        try:
            with open(self.defaultFile, 'rb') as f:
                return f.read()
        except OSError as e:
            logger.warning(f'Unable to read default file {self.defaultFile}: {e}')
            return b''
