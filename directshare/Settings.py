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

import errno
import json
import os

from directshare.Kernel import Singleton, getLogger

CONFIG_FILE = 'config.json'

# Used whenever a download name cannot be derived from a registered path.
FALLBACK_FILENAME = 'file'

DEFAULT_PORT = 1024
DEFAULT_KEY_LENGTH = 8

MAX_PORT = 65535
MAX_KEY_LENGTH = 255

TRANSFER_CHUNK_SIZE = int(os.getenv('TRANSFER_CHUNK_SIZE', 64 * 1024))

# Upper bound of bytes buffered between a folder walk and its HTTP response.
ARCHIVE_PIPE_CAPACITY = int(os.getenv('ARCHIVE_PIPE_CAPACITY', 32 * 1024))

PORT_MAPPING_LEASE_DURATION = 120 # Seconds
PORT_MAPPING_MAX_ATTEMPTS = 5
PORT_MAPPING_DESCRIPTION = 'DirectShare'

SUPPORT_URL = 'https://github.com/directshare/directshare/issues'

logger = getLogger(__name__)


# =============================================================================
# Config
# =============================================================================


class ConfigLoadError(Exception):
    """Base exception for config loading errors"""

    def __init__(self, message, path=None):
        super().__init__(message)
        self.path = path


class UnreadableConfigError(ConfigLoadError):
    """Raised when the config file cannot be read at all"""

    def __init__(self, message, path=None, cause=None):
        super().__init__(message, path)
        self.cause = cause

    @property
    def notFound(self):
        return isinstance(self.cause, OSError) and self.cause.errno == errno.ENOENT


class InvalidConfigError(ConfigLoadError):
    """Raised when the config file is readable but corrupted or not in right format"""
    pass


class DirectShareConfig:
    """App config"""

    def __init__(self, port=DEFAULT_PORT, keyLength=DEFAULT_KEY_LENGTH, defaultFile=None):
        # Port that can be used to bind server
        self.port = port
        # Key length for shorten url
        self.keyLength = keyLength
        # File that will be used for 404 page
        self.defaultFile = defaultFile

        self.validate()

    def validate(self):
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not (1 <= self.port <= MAX_PORT):
            raise InvalidConfigError(f'port must be an integer between 1 and {MAX_PORT}, got {self.port!r}')

        if (
            isinstance(self.keyLength, bool) or not isinstance(self.keyLength, int) or
            not (1 <= self.keyLength <= MAX_KEY_LENGTH)
        ):
            raise InvalidConfigError(
                f'keyLength must be an integer between 1 and {MAX_KEY_LENGTH}, got {self.keyLength!r}'
            )

        if self.defaultFile is not None and not isinstance(self.defaultFile, str):
            raise InvalidConfigError(f'defaultFile must be a string or null, got {self.defaultFile!r}')

    def toDict(self):
        return {'port': self.port, 'keyLength': self.keyLength, 'defaultFile': self.defaultFile}

    @classmethod
    def fromDict(cls, data):
        if not isinstance(data, dict):
            raise InvalidConfigError(f'Config must be a JSON object, got {type(data).__name__}')

        unknown = set(data) - {'port', 'keyLength', 'defaultFile'}
        if unknown:
            raise InvalidConfigError(f"Unknown config field(s): {', '.join(sorted(unknown))}")

        return cls(
            port=data.get('port', DEFAULT_PORT),
            keyLength=data.get('keyLength', DEFAULT_KEY_LENGTH),
            defaultFile=data.get('defaultFile'),
        )

    def __eq__(self, other):
        return isinstance(other, DirectShareConfig) and self.toDict() == other.toDict()

    def __repr__(self):
        return f'DirectShareConfig({self.toDict()})'


def loadConfig(path):
    """
    Load config from a JSON file.

    Raises:
        UnreadableConfigError: The file cannot be read
        InvalidConfigError: The file content is not a valid config
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            content = f.read()
    except OSError as e:
        raise UnreadableConfigError(f'Cannot read config {path}: {e}', path=path, cause=e) from e

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise InvalidConfigError(f'Config {path} is not valid JSON: {e}', path=path) from e

    try:
        return DirectShareConfig.fromDict(data)
    except InvalidConfigError as e:
        e.path = path
        raise


def writeConfig(config, path):
    configDir = os.path.dirname(path)
    if configDir:
        os.makedirs(configDir, exist_ok=True)

    with open(path, 'w', encoding='utf-8') as f:
        json.dump(config.toDict(), f, indent=4)


def loadOrCreateConfig(path):
    """
    Load config, falling back to the default config when the file is unreadable.
    A missing config file is created with default values.

    Raises:
        InvalidConfigError: The file exists but is corrupted, the user must fix or delete it.
    """
    try:
        return loadConfig(path)
    except UnreadableConfigError as e:
        logger.warning(f'Config is unreadable. Using default config. {e}')

        config = DirectShareConfig()

        if e.notFound:
            logger.info('Creating default config...')
            try:
                writeConfig(config, path)
            except OSError as writeError:
                logger.warning(f'Cannot write default config. {writeError}')
            else:
                logger.info(f'Default config written to {path}')

        return config


# Singleton
class SettingsGetter(Singleton):
    """Process-wide settings: the loaded config and where to report problems"""

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            raise RuntimeError('Get SettingsGetter before initialized it.')
        return cls._instances[cls]

    def initialize(self, config=None):
        self._config = config or DirectShareConfig()

    @property
    def config(self) -> DirectShareConfig:
        return self._config

    @config.setter
    def config(self, config: DirectShareConfig):
        self._config = config

    def getSupportURL(self):
        return SUPPORT_URL
