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

import argparse
import json
import os
import logging
import logging.config
import platform

from directshare.Kernel import PUBLIC_VERSION, getLogger, configureGlobalLogLevel, LOG_LEVEL_MAPPING, StorageLocator
from directshare.Settings import CONFIG_FILE, MAX_KEY_LENGTH, MAX_PORT, SettingsGetter
from directshare.Utils import flushPrint, getEnv

logger = getLogger(__name__)


def loadEnvFile():
    """
    Load environment variables from .env file using StorageLocator.
    Only sets variables that are not already defined in os.environ.
    """
    storageLocator = StorageLocator.getInstance()
    envFilePath = storageLocator.findConfig('.env')

    if not os.path.exists(envFilePath):
        return 0

    loadedCount = 0
    try:
        with open(envFilePath, 'r', encoding='utf-8') as f:
            for lineNum, line in enumerate(f, 1):
                line = line.strip()

                if not line or line.startswith('#'):
                    continue

                if '=' not in line:
                    flushPrint(f'Warning: .env line {lineNum}: Invalid format (missing =): {line}')
                    continue

                key, _, value = line.partition('=')
                key = key.strip()
                value = value.strip()

                if not key:
                    flushPrint(f'Warning: .env line {lineNum}: Empty key')
                    continue

                if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                    value = value[1:-1]

                # Environment takes precedence
                if key not in os.environ:
                    os.environ[key] = value
                    loadedCount += 1
                else:
                    logger.debug(f'.env: Skipped {key} (already set in environment)')
    except OSError as e:
        flushPrint(f'Error: Unable to load .env file {envFilePath}: {e}')
        logger.error(f'Unable to load .env file {envFilePath}: {e}')
        return loadedCount

    logger.info(f'Loaded {loadedCount} environment variables from {envFilePath}')
    return loadedCount


def suppressNoisyLogger():
    logging.getLogger('urllib3').setLevel(logging.INFO)
    logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
    logging.getLogger('sentry_sdk').setLevel(logging.INFO)


def configureLogging(logLevel):
    """
    Configure logging from --log-level, else DIRECTSHARE_LOGGING_LEVEL. Without either,
    the logging setup is left unchanged.

    Both can be a level name (DEBUG, INFO, WARNING, ERROR) or the path of a
    logging configuration JSON file (dictConfig schema).
    """
    if logLevel is None:
        logLevel = getEnv('DIRECTSHARE_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r', encoding='utf-8') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel
        except (json.JSONDecodeError, OSError, ValueError, TypeError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}")
            flushPrint("Falling back to default logging level configuration")
            logLevel = 'WARNING'

    if logLevel.upper() in LOG_LEVEL_MAPPING:
        configureGlobalLogLevel(LOG_LEVEL_MAPPING[logLevel.upper()])
        logger.debug(f"Logging level set to {logLevel.upper()}")
    else:
        configureGlobalLogLevel(logging.WARNING)
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")

    suppressNoisyLogger()
    return logLevel


def showVersion():
    flushPrint(f"DirectShare v{PUBLIC_VERSION}")
    flushPrint("")

    uname = platform.uname()
    flushPrint(f"Architecture: {uname.system} {uname.release} {uname.machine} - {uname.version} ({uname.processor})")

    settingsGetter = SettingsGetter.getInstance()
    flushPrint(f"Support: {settingsGetter.getSupportURL()}")


# Argument validators.
def validateRange(valueStr, fieldName, minimum, maximum):
    try:
        value = int(valueStr)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid {fieldName.lower()} value: {valueStr}")

    if not (minimum <= value <= maximum):
        raise argparse.ArgumentTypeError(f"{fieldName} {value} is out of valid range ({minimum}-{maximum})")
    return value


def validatePort(portStr):
    return validateRange(portStr, "Port", 1, MAX_PORT)


def validateKeyLength(keyLengthStr):
    return validateRange(keyLengthStr, "Key length", 1, MAX_KEY_LENGTH)


def validateLogLevel(logLevel):
    # Allow file paths (they'll be validated later)
    if os.path.exists(logLevel):
        return logLevel

    validLevels = list(LOG_LEVEL_MAPPING)
    if logLevel.upper() not in validLevels:
        raise argparse.ArgumentTypeError(
            f"Invalid log level '{logLevel}'. Valid levels are: {', '.join(validLevels)}"
        )
    return logLevel.upper()


def configureCLIParser():
    parser = argparse.ArgumentParser(
        prog='directshare',
        description="DirectShare shares local files and folders over HTTP with short links.",
    )

    parser.add_argument(
        "paths",
        metavar="FILE_OR_FOLDER",
        nargs='*',
        help="Files or folders to share. Folders are downloaded as tar archives.",
    )
    parser.add_argument(
        "--port",
        type=validatePort,
        help=f"Port number for the server (1-{MAX_PORT}, default: from {CONFIG_FILE})",
        metavar="PORT",
    )
    parser.add_argument(
        "--key-length",
        type=validateKeyLength,
        help=f"Length of generated link keys (1-{MAX_KEY_LENGTH}, default: from {CONFIG_FILE})",
        metavar="LENGTH",
        dest="keyLength",
    )
    parser.add_argument(
        "--config",
        help=f"Path of the config file (default: {CONFIG_FILE} found in current, home or platform directory)",
        metavar="CONFIG_FILE",
        dest="configPath",
    )
    parser.add_argument(
        "--address",
        help="Address used in printed links (default: public address, or 127.0.0.1 when unknown)",
        metavar="HOST",
    )
    parser.add_argument(
        "--no-port-mapping",
        action="store_false",
        default=True,
        help="Do not forward the port on the router with UPnP",
        dest="portMapping",
    )
    parser.add_argument(
        "--log-level",
        type=validateLogLevel,
        help="Set logging level (DEBUG, INFO, WARNING, ERROR) or path to logging config JSON file (default: WARNING)",
        metavar="LEVEL_OR_FILE",
        dest="logLevel",
    )
    parser.add_argument("--version", action="store_true", help="Show version information")

    return parser
