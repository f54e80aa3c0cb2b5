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

import hashlib
import json
import os
import re
import signal
import socket
import subprocess
import sys
import tempfile
import time
import unittest

import psutil

PROJECT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
CORE_SCRIPT = os.path.join(PROJECT_DIR, 'Core.py')

FILE_ADDED_PATTERN = re.compile(r'^File added\. (?P<path>.+) -> (?P<url>http://\S+)$')
SERVER_STARTING_MESSAGE = 'Server starting on'


# ---------------------------
# File I/O helpers
# ---------------------------
def generateRandomFile(path, sizeBytes):
    """Generate a random file of the specified size"""
    with open(path, 'wb') as f:
        f.write(os.urandom(sizeBytes))


def getFileHash(path):
    """Get the SHA-256 hash of a file"""
    sha256 = hashlib.sha256()
    with open(path, 'rb') as f:
        for block in iter(lambda: f.read(65536), b''):
            sha256.update(block)
    return sha256.hexdigest()


def getBytesHash(data):
    return hashlib.sha256(data).hexdigest()


def isProcessRunning(pid):
    """Check if a process is running"""
    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def getFreePort():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


# ---------------------------
# Base test class
# ---------------------------
class DirectShareTestBase(unittest.TestCase):
    """
    Base class for tests running Core.py in a separate process.

    Every test gets its own temporary directory, a storage location for config files
    (DIRECTSHARE_STORAGE_LOCATION) and a random test file.
    """

    fileSizeBytes = 1024 * 1024

    def setUp(self):
        self._tempDirObj = tempfile.TemporaryDirectory()
        self.tempDir = self._tempDirObj.name
        self.storageDir = os.path.join(self.tempDir, 'storage')
        os.makedirs(self.storageDir)

        self.coreProcess = None
        self.procLogPath = os.path.join(self.tempDir, 'directshare_proc.log')
        self._procLogFile = None

        self.testFilePath = os.path.join(self.tempDir, 'testfile.bin')
        generateRandomFile(self.testFilePath, self.fileSizeBytes)
        self.originalFileHash = getFileHash(self.testFilePath)

        print(f"[Test] Generated test file: {self.testFilePath} ({self.fileSizeBytes} bytes)")

    def tearDown(self):
        self._terminateProcess()

        if self._procLogFile:
            self._procLogFile.close()
            self._procLogFile = None

        self._tempDirObj.cleanup()

    # ---------------------------
    # Process helpers
    # ---------------------------
    def getProcessEnv(self, extraEnvVars=None):
        env = os.environ.copy()
        env['DIRECTSHARE_STORAGE_LOCATION'] = self.storageDir
        env['PYTHONUNBUFFERED'] = '1'
        env.pop('DIRECTSHARE_LOGGING_LEVEL', None)

        if extraEnvVars:
            for key, value in extraEnvVars.items():
                env[key] = str(value)

        return env

    def writeConfig(self, config):
        configPath = os.path.join(self.storageDir, 'config.json')
        with open(configPath, 'w', encoding='utf-8') as f:
            if isinstance(config, str):
                f.write(config)
            else:
                json.dump(config, f)
        return configPath

    def runDirectShare(self, args, timeout=30, extraEnvVars=None):
        """Run Core.py until it exits. Returns the CompletedProcess with stdout and stderr merged."""
        command = [sys.executable, CORE_SCRIPT] + list(args)
        print(f"[Test] Command: {' '.join(command)}")

        return subprocess.run(
            command,
            cwd=PROJECT_DIR,
            env=self.getProcessEnv(extraEnvVars),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
        )

    def startDirectShare(self, paths, port=None, extraArgs=None, extraEnvVars=None, timeout=30):
        """
        Start Core.py sharing `paths` and wait until the server listens.

        Returns:
            dict: {path: url} parsed from the "File added" lines
        """
        self.port = port or getFreePort()
        command = [
            sys.executable, CORE_SCRIPT, *paths,
            '--port', str(self.port), '--address', '127.0.0.1', '--no-port-mapping'
        ]
        if extraArgs:
            command.extend(extraArgs)

        print(f"[Test] Command: {' '.join(command)}")

        # Redirect output to a file to avoid pipe buffer deadlock
        self._procLogFile = open(self.procLogPath, 'w+', encoding='utf-8', buffering=1)
        self.coreProcess = subprocess.Popen(
            command,
            cwd=PROJECT_DIR,
            env=self.getProcessEnv(extraEnvVars),
            stdout=self._procLogFile,
            stderr=subprocess.STDOUT,
            text=True,
        )
        print(f"[Test] Process PID: {self.coreProcess.pid}")

        startTime = time.time()
        while time.time() - startTime < timeout:
            output = self.readOutput()
            if SERVER_STARTING_MESSAGE in output:
                return self.parseLinks(output)

            if self.coreProcess.poll() is not None:
                self.fail(f"Process exited with {self.coreProcess.returncode} before serving:\n{output}")

            time.sleep(0.2)

        self.fail(f"Server did not start within {timeout} seconds:\n{self.readOutput()}")

    def readOutput(self):
        if not os.path.exists(self.procLogPath):
            return ''

        with open(self.procLogPath, 'r', encoding='utf-8', errors='replace') as f:
            return f.read()

    @staticmethod
    def parseLinks(output):
        links = {}
        for line in output.splitlines():
            match = FILE_ADDED_PATTERN.match(line.strip())
            if match:
                links[match.group('path')] = match.group('url')
        return links

    def stopDirectShare(self, timeout=10):
        """Send Ctrl+C and return the exit code"""
        if not self.coreProcess or self.coreProcess.poll() is not None:
            return self.coreProcess.returncode if self.coreProcess else None

        os.kill(self.coreProcess.pid, signal.SIGINT)
        return self.coreProcess.wait(timeout=timeout)

    def _terminateProcess(self):
        """Terminate the DirectShare process, gracefully first"""
        if not self.coreProcess:
            return

        if self.coreProcess.poll() is None:
            print("[Test] Process is still running, sending Ctrl+C signal")
            try:
                self.stopDirectShare(timeout=5)
            except subprocess.TimeoutExpired:
                print("[Test] Process ignored Ctrl+C")

        if isProcessRunning(self.coreProcess.pid):
            self.coreProcess.terminate()
            try:
                self.coreProcess.wait(timeout=5)
            except subprocess.TimeoutExpired:
                print("[Test] Process didn't terminate, killing it")
                self.coreProcess.kill()
                self.coreProcess.wait()
