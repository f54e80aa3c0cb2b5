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

import json
import os
import shutil
import tempfile
import unittest

from directshare.Settings import (
    DEFAULT_KEY_LENGTH, DEFAULT_PORT, DirectShareConfig, InvalidConfigError, SettingsGetter, UnreadableConfigError,
    loadConfig, loadOrCreateConfig, writeConfig
)


class DirectShareConfigTest(unittest.TestCase):

    def testDefaults(self):
        config = DirectShareConfig()

        self.assertEqual(config.port, DEFAULT_PORT)
        self.assertEqual(config.keyLength, DEFAULT_KEY_LENGTH)
        self.assertIsNone(config.defaultFile)
        self.assertEqual(config.toDict(), {'port': 1024, 'keyLength': 8, 'defaultFile': None})

    def testValidation(self):
        invalid = [
            {'port': 0},
            {'port': 65536},
            {'port': '8080'},
            {'port': True},
            {'keyLength': 0},
            {'keyLength': 256},
            {'keyLength': 2.5},
            {'defaultFile': 42},
        ]

        for fields in invalid:
            with self.subTest(fields=fields):
                with self.assertRaises(InvalidConfigError):
                    DirectShareConfig(**fields)

    def testFromDict(self):
        config = DirectShareConfig.fromDict({'port': 8080, 'defaultFile': '404.html'})

        self.assertEqual(config, DirectShareConfig(8080, DEFAULT_KEY_LENGTH, '404.html'))

        with self.assertRaises(InvalidConfigError):
            DirectShareConfig.fromDict({'port': 8080, 'unknown': 1})

        with self.assertRaises(InvalidConfigError):
            DirectShareConfig.fromDict([8080])


class ConfigFileTest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.mkdtemp()
        self.configPath = os.path.join(self.tempDir, 'config.json')

    def tearDown(self):
        shutil.rmtree(self.tempDir, ignore_errors=True)

    def _write(self, content):
        with open(self.configPath, 'w', encoding='utf-8') as f:
            f.write(content)

    def testWriteThenLoad(self):
        config = DirectShareConfig(port=9000, keyLength=12, defaultFile='missing.html')
        writeConfig(config, self.configPath)

        self.assertEqual(loadConfig(self.configPath), config)

    def testLoadMissing(self):
        with self.assertRaises(UnreadableConfigError) as context:
            loadConfig(self.configPath)

        self.assertTrue(context.exception.notFound)

    def testLoadCorrupted(self):
        self._write('{"port": 80')

        with self.assertRaises(InvalidConfigError) as context:
            loadConfig(self.configPath)

        self.assertEqual(context.exception.path, self.configPath)

        self._write(json.dumps({'port': -1}))
        with self.assertRaises(InvalidConfigError):
            loadConfig(self.configPath)

    def testLoadOrCreateWritesDefaults(self):
        with self.assertLogs('directshare.Settings', level='INFO'):
            config = loadOrCreateConfig(self.configPath)

        self.assertEqual(config, DirectShareConfig())
        with open(self.configPath, 'r', encoding='utf-8') as f:
            self.assertEqual(json.load(f), {'port': 1024, 'keyLength': 8, 'defaultFile': None})

    def testLoadOrCreateUnreadable(self):
        # A directory cannot be read as a file, defaults are used and nothing is written
        os.makedirs(self.configPath)

        with self.assertLogs('directshare.Settings', level='WARNING'):
            config = loadOrCreateConfig(self.configPath)

        self.assertEqual(config, DirectShareConfig())
        self.assertTrue(os.path.isdir(self.configPath))

    def testLoadOrCreateInvalidPropagates(self):
        self._write('port = 1024')

        with self.assertRaises(InvalidConfigError):
            loadOrCreateConfig(self.configPath)


class SettingsGetterTest(unittest.TestCase):

    def testInitialized(self):
        settingsGetter = SettingsGetter.getInstance()

        self.assertIs(SettingsGetter(), settingsGetter)
        self.assertIsInstance(settingsGetter.config, DirectShareConfig)
        self.assertTrue(settingsGetter.getSupportURL().startswith('https://'))

    def testReplaceConfig(self):
        settingsGetter = SettingsGetter.getInstance()
        original = settingsGetter.config
        self.addCleanup(setattr, settingsGetter, 'config', original)

        settingsGetter.config = DirectShareConfig(port=8080)

        self.assertEqual(SettingsGetter.getInstance().config.port, 8080)


if __name__ == '__main__':
    unittest.main()
