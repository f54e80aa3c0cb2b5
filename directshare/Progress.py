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

import time

from directshare.Utils import ONE_MB, formatSize


class Progress:
    """
    Log-based transfer progress for one response.

    Many downloads run at the same time, so there is no interactive bar. A line is
    emitted at most every `logInterval` seconds, on every 5 MiB boundary and when forced.
    `totalSize` is None for streams of unknown length (folder archives).
    """

    def __init__(self, totalSize, sizeFormatter=None, loggerCallback=print, logInterval=2.0, label=''):
        self.totalSize = totalSize
        self.sizeFormatter = sizeFormatter or formatSize
        self.loggerCallback = loggerCallback
        self.logInterval = logInterval
        self.label = label

        self.transferred = 0
        self.startTime = time.monotonic()
        self.lastProgressTime = self.startTime
        self.lastProgressBytes = 0

    def update(self, bytesTransferred, forceLog=False, extraText=""):
        """Update progress with the total bytes transferred so far."""
        self.transferred = bytesTransferred
        currentTime = time.monotonic()

        if self._shouldLog(forceLog, currentTime):
            self._logProgress(currentTime, extraText)

    def advance(self, increment):
        self.update(self.transferred + increment)

    def _shouldLog(self, forceLog, currentTime):
        return (
            forceLog or (self.transferred > 0 and self.transferred % (5 * ONE_MB) == 0) or
            (currentTime - self.lastProgressTime) >= self.logInterval
        )

    def _logProgress(self, currentTime, extraText):
        timeDelta = currentTime - self.lastProgressTime
        bytesDelta = self.transferred - self.lastProgressBytes

        speedBytesPerSec = bytesDelta / timeDelta if timeDelta > 0 else 0
        speedDisplay = self.sizeFormatter(int(speedBytesPerSec))
        sizeDisplay = self.sizeFormatter(self.transferred)

        prefix = f'{self.label}: ' if self.label else ''
        if self.totalSize:
            totalDisplay = self.sizeFormatter(self.totalSize)
            progressMsg = (
                f'{prefix}Progress: {sizeDisplay}/{totalDisplay} ({self.getPercentage():.2f}%), {speedDisplay}/sec'
            )
        else:
            progressMsg = f'{prefix}Progress: {sizeDisplay}, {speedDisplay}/sec'

        if extraText:
            progressMsg += f', {extraText}'

        self.loggerCallback(progressMsg)

        self.lastProgressTime = currentTime
        self.lastProgressBytes = self.transferred

    def getPercentage(self):
        return (self.transferred * 100.0 / self.totalSize) if self.totalSize else 0

    def getElapsedTime(self):
        return time.monotonic() - self.startTime

    def getAverageSpeed(self):
        elapsed = self.getElapsedTime()
        return self.transferred / elapsed if elapsed > 0 else 0

    def finish(self, complete=True):
        """Emit the final line of this transfer."""
        status = 'completed' if complete else 'interrupted'
        speed = self.sizeFormatter(int(self.getAverageSpeed()))
        prefix = f"{self.label}: " if self.label else ""
        self.loggerCallback(
            f"{prefix}Transfer {status}, "
            f"{self.sizeFormatter(self.transferred)} in {self.getElapsedTime():.1f}s ({speed}/sec)"
        )
