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

import platform
import sys
import os
import signal

import certifi

from directshare.Kernel import StorageLocator, getLogger
from directshare.Settings import CONFIG_FILE, InvalidConfigError, SettingsGetter, loadOrCreateConfig
from directshare.CLI import configureCLIParser, configureLogging, showVersion, loadEnvFile
from directshare.Delivery import DeliveryEngine
from directshare.PortMapping import PortMappingController
from directshare.Registry import PathMap
from directshare.Server import createServer
from directshare.Utils import flushPrint, getPublicAddress, sendException

LOCALHOST = '127.0.0.1'
LISTEN_ADDRESS = '0.0.0.0'
PORT_MAPPING_RELEASE_TIMEOUT = 5 # Seconds to wait for the mapping removal on exit

logger = getLogger(__name__)


def setupGracefulShutdown():
    """Setup signal handlers for graceful shutdown on multiple Ctrl+C"""
    context = {'shutdownInProgress': False}

    def signalHandler(signum, frame):
        if context['shutdownInProgress']:
            # Second Ctrl+C - force immediate exit without cleanup messages
            os._exit(0)
        else:
            # First Ctrl+C - set flag and raise KeyboardInterrupt normally
            context['shutdownInProgress'] = True
            raise KeyboardInterrupt()

    signal.signal(signal.SIGINT, signalHandler)


def setupSettings():

    # Load .env file early (before any configuration)
    loadEnvFile()

    if platform.system().lower() != 'windows':
        os.environ["SSL_CERT_FILE"] = certifi.where()

    return SettingsGetter()


def loadSettingsConfig(args):
    """
    Load the config file and apply command line overrides.

    Raises:
        InvalidConfigError: The config file is corrupted
    """
    configPath = args.configPath or StorageLocator.getInstance().findConfig(CONFIG_FILE)
    config = loadOrCreateConfig(configPath)

    if args.port is not None:
        config.port = args.port
    if args.keyLength is not None:
        config.keyLength = args.keyLength

    config.validate()
    return config


def resolveAdvertisedAddress(args):
    if args.address:
        return args.address

    return getPublicAddress() or LOCALHOST


def registerPaths(pathMap, paths, host, port):
    """Register every path and announce its link. Returns [(path, key, url), ...] in input order."""
    links = []

    for path in paths:
        key = pathMap.register(path)
        url = f'http://{host}:{port}/{key}'
        logger.info(f'File added. {path} -> {url}')
        flushPrint(f'File added. {path} -> {url}')
        links.append((path, key, url))

    return links


def processSharing(args):
    settingsGetter = SettingsGetter.getInstance()

    try:
        config = loadSettingsConfig(args)
    except InvalidConfigError as e:
        logger.error(
            f'Config is corrupted or not in right format. Please fix or delete config file and restart. {e}'
        )
        flushPrint(f'Config {e.path or ""} is corrupted or not in right format: {e}')
        return 1

    settingsGetter.config = config

    if not args.paths:
        message = 'Program started without any file added. Please drag files or add arguments to file to start server.'
        logger.error(message)
        flushPrint(message)
        return 0

    pathMap = PathMap(config.keyLength)
    address = resolveAdvertisedAddress(args)
    registerPaths(pathMap, args.paths, address, config.port)

    engine = DeliveryEngine(pathMap, config.defaultFile)

    try:
        server = createServer(config.port, engine, host=LISTEN_ADDRESS)
    except OSError as e:
        sendException(
            logger,
            e,
            action='Choose another port with --port or in the config file.',
            errorPrefix=f'Unable to listen on port {config.port}',
        )
        return 1

    logger.info(f'Server starting on http://{address}:{config.port}/')
    flushPrint(f'Server starting on http://{address}:{config.port}/')

    controller = None
    if args.portMapping:
        controller = PortMappingController(config.port, advertisedAddress=address)
        controller.listenShutdownSignal()
        controller.start()

    try:
        server.start()
    finally:
        if controller:
            controller.stop()
            controller.join(PORT_MAPPING_RELEASE_TIMEOUT)
            if controller.is_alive():
                logger.warning('Port mapping removal did not finish in time, the mapping will expire on its own')
        server.server_close()

    return 0


def main(argv=None):
    parser = configureCLIParser()
    args = parser.parse_args(argv)

    configureLogging(args.logLevel)

    if args.version:
        showVersion()
        return 0

    return processSharing(args)


def run():
    setupSettings()
    setupGracefulShutdown()

    try:
        exitCode = main()
        sys.exit(exitCode or 0)
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        sys.exit(0)
    except Exception as e:
        sendException(logger, e)
        sys.exit(1)


if __name__ == '__main__':
    run()
