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

import secrets
import string
import threading

from typing import Optional

from directshare.Kernel import getLogger

KEY_ALPHABET = '_-' + string.digits + string.ascii_lowercase + string.ascii_uppercase

logger = getLogger(__name__)


def genKey(size: int) -> str:
    """Generate a key of exactly `size` characters drawn uniformly from KEY_ALPHABET."""
    if size < 1:
        raise ValueError(f'Key size must be positive, got {size}')

    return ''.join(secrets.choice(KEY_ALPHABET) for _ in range(size))


class KeyGenerator:
    """Generate short keys substituting for filesystem paths in share links"""

    def __init__(self, keyLength: int):
        if keyLength < 1:
            raise ValueError(f'Key length must be positive, got {keyLength}')

        self.keyLength = keyLength

    def generate(self) -> str:
        return genKey(self.keyLength)


class PathMap:
    """
    In-memory mapping from short keys to filesystem paths.

    Paths are recorded verbatim and not validated. A colliding key replaces the
    previous mapping. Registration is serialized by a lock, lookups are plain dict reads.
    """

    def __init__(self, keyLength: int, keyGenerator: Optional[KeyGenerator] = None):
        self.keyGenerator = keyGenerator or KeyGenerator(keyLength)
        self.map = {}
        self.lock = threading.Lock()

    @property
    def keyLength(self) -> int:
        return self.keyGenerator.keyLength

    def register(self, path) -> str:
        """Register path and return shorten key"""
        key = self.keyGenerator.generate()

        with self.lock:
            if key in self.map:
                logger.debug(f'Key {key} collided, replacing {self.map[key]}')
            self.map[key] = path

        return key

    def resolve(self, key: str):
        """Get file path from shorten key, None if the key is unknown"""
        return self.map.get(key)

    def items(self):
        with self.lock:
            return list(self.map.items())

    def __len__(self):
        return len(self.map)
