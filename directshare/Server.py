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

import sys

from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from directshare.Archive import ArchiveError
from directshare.Delivery import DeliveryEngine, Response
from directshare.Kernel import getLogger, PUBLIC_VERSION
from directshare.Progress import Progress
from directshare.Utils import formatSize

LOG_OUTPUT_DURATION = 1 # Seconds
MAX_REQUEST_LINE = 65536
MAX_DISCARDED_BODY = 64 * 1024

logger = getLogger(__name__)


class ShareHandler(BaseHTTPRequestHandler):
    """Hand every request to the DeliveryEngine and stream its response back"""

    protocol_version = 'HTTP/1.1'
    server_version = f'DirectShare/{PUBLIC_VERSION}'

    @property
    def remoteAddr(self):
        return f'{self.client_address[0]}:{self.client_address[1]}'

    def handle_one_request(self) -> None:
        # Same flow as BaseHTTPRequestHandler, but no method is "unsupported" (501):
        # whatever the method, the engine decides.
        try:
            self.raw_requestline = self.rfile.readline(MAX_REQUEST_LINE + 1)
            if len(self.raw_requestline) > MAX_REQUEST_LINE:
                self.requestline = ''
                self.request_version = ''
                self.command = ''
                self.send_error(HTTPStatus.REQUEST_URI_TOO_LONG)
                return

            if not self.raw_requestline:
                self.close_connection = True
                return

            if not self.parse_request():
                return

            self.handleRequest()
            self.wfile.flush()
        except TimeoutError as e:
            logger.info(f'Request from {self.remoteAddr} timed out: {e}')
            self.close_connection = True

    def handleRequest(self):
        self.discardRequestBody()

        response = self.server.engine.handle(self.remoteAddr, self.command, self.path)
        try:
            self.sendResponse(response)
        finally:
            response.close()

    def discardRequestBody(self):
        """Request bodies are never used. Skip small ones, otherwise don't reuse the connection."""
        try:
            length = int(self.headers.get('Content-Length', 0))
        except ValueError:
            length = -1

        if self.headers.get('Transfer-Encoding') or length < 0 or length > MAX_DISCARDED_BODY:
            self.close_connection = True
        elif length:
            self.rfile.read(length)

    def sendResponse(self, response: Response):
        self.send_response(response.status)
        for name, value in response.headers:
            self.send_header(name, value)

        if response.closeConnection:
            self.send_header('Connection', 'close')
            self.close_connection = True

        self.end_headers()

        if self.command == 'HEAD':
            return

        if response.status != HTTPStatus.OK:
            for chunk in response.body:
                self.wfile.write(chunk)
            return

        self._streamBody(response)

    def _streamBody(self, response: Response):
        label = str(response.request) if response.request else self.remoteAddr
        size = response.reader.size if response.reader else None
        progress = Progress(
            size,
            sizeFormatter=formatSize,
            loggerCallback=logger.info,
            logInterval=LOG_OUTPUT_DURATION,
            label=label,
        )

        written = 0
        try:
            for chunk in response.body:
                self.wfile.write(chunk)
                written += len(chunk)
                progress.update(written)
        except ArchiveError as e:
            # Without a length, a truncated archive looks like a dropped connection to the client.
            logger.warning(f'Archive for {label} truncated after {written} bytes. {e}')
            self.close_connection = True
            progress.finish(complete=False)
        except (ConnectionResetError, ConnectionAbortedError, BrokenPipeError, ConnectionError) as e:
            logger.info(f'Connection to {self.remoteAddr} closed during transfer. {e}')
            self.close_connection = True
            progress.finish(complete=False)
        except OSError as e:
            logger.warning(f'Transfer for {label} failed after {written} bytes. {e}')
            self.close_connection = True
            progress.finish(complete=False)
        else:
            if size is not None and written != size:
                # The client still waits for the declared length, only closing ends the response.
                logger.warning(f'Sent {written} of {size} bytes for {label}, closing connection')
                self.close_connection = True
                progress.finish(complete=False)
            else:
                progress.finish()

    def log_message(self, format, *args):
        logger.debug(f'{self.remoteAddr} - {format % args}')


class Server(ThreadingHTTPServer):

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, serverAddress, engine: DeliveryEngine, requestHandlerClass=None):
        self.engine = engine

        if requestHandlerClass is None:
            requestHandlerClass = ShareHandler

        super().__init__(serverAddress, requestHandlerClass)

    @property
    def port(self) -> int:
        return self.server_address[1]

    # Transport errors end only the affected connection
    def handle_error(self, request, client_address):
        error = sys.exc_info()[1]

        if isinstance(error, ConnectionError):
            logger.info(f'Connection from {client_address[0]}:{client_address[1]} dropped. {error}')
        else:
            logger.exception(f'Error while handling connection from {client_address[0]}:{client_address[1]}')

    def start(self):
        self.serve_forever()

    def shutdown(self):
        logger.debug('Server shutting down')
        super().shutdown()


def createServer(port, engine: DeliveryEngine, host='0.0.0.0', handlerClass=None) -> Server:
    """
    Bind a Server on host:port.

    Raises:
        OSError: The port cannot be bound
    """
    return Server((host, port), engine, handlerClass)
