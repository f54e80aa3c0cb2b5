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

import ipaddress
import signal
import socket
import threading
import time

from contextlib import closing
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Tuple
from urllib.parse import urljoin, urlparse
from xml.etree import ElementTree
from xml.sax.saxutils import escape

import requests

from directshare.Kernel import getLogger
from directshare.Settings import (
    PORT_MAPPING_DESCRIPTION, PORT_MAPPING_LEASE_DURATION, PORT_MAPPING_MAX_ATTEMPTS
)
from directshare.Utils import getLocalAddress

SSDP_ADDRESS = ('239.255.255.250', 1900)
SSDP_MX = 2
SEARCH_TARGETS = (
    'urn:schemas-upnp-org:device:InternetGatewayDevice:1',
    'urn:schemas-upnp-org:service:WANIPConnection:1',
    'urn:schemas-upnp-org:service:WANPPPConnection:1',
)
WAN_SERVICE_PREFIXES = (
    'urn:schemas-upnp-org:service:WANIPConnection:',
    'urn:schemas-upnp-org:service:WANPPPConnection:',
)

DISCOVERY_TIMEOUT = 3 # Seconds
SOAP_TIMEOUT = 10 # Seconds
LEASE_RENEW_MARGIN = 10 # Seconds before expiry to renew the lease
RETRY_BASE_DELAY = 5 # Seconds, the n-th consecutive failure waits RETRY_BASE_DELAY * (n + 1)

SOAP_ENVELOPE = (
    '<?xml version="1.0"?>\r\n'
    '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/" '
    's:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">'
    '<s:Body><u:{action} xmlns:u="{serviceType}">{arguments}</u:{action}></s:Body>'
    '</s:Envelope>\r\n'
)

logger = getLogger(__name__)


class PortMappingError(RuntimeError):
    """Raised when the gateway rejects or cannot process a port mapping request"""

    def __init__(self, message, code=None, description=None):
        super().__init__(message)
        self.code = code
        self.description = description


class GatewayNotFoundError(PortMappingError):
    """Raised when no usable UPnP Internet gateway device can be found"""
    pass


def _localName(tag: str) -> str:
    return tag.rsplit('}', 1)[-1]


def _findText(element, name) -> Optional[str]:
    for child in element.iter():
        if _localName(child.tag) == name:
            return (child.text or '').strip()
    return None


# =============================================================================
# Discovery
# =============================================================================


def buildSearchRequest(searchTarget: str, mx: int = SSDP_MX) -> bytes:
    return (
        'M-SEARCH * HTTP/1.1\r\n'
        f'HOST: {SSDP_ADDRESS[0]}:{SSDP_ADDRESS[1]}\r\n'
        'MAN: "ssdp:discover"\r\n'
        f'MX: {mx}\r\n'
        f'ST: {searchTarget}\r\n'
        '\r\n'
    ).encode('ascii')


def parseSSDPResponse(data: bytes) -> Optional[Dict[str, str]]:
    """
    Parse an SSDP search response.

    Returns:
        dict: Header names lowercased, None if it is not a "200 OK" response
    """
    lines = data.decode('utf-8', errors='replace').splitlines()
    if not lines:
        return None

    statusLine = lines[0].split(None, 2)
    if len(statusLine) < 2 or not statusLine[0].upper().startswith('HTTP/') or statusLine[1] != '200':
        return None

    headers = {}
    for line in lines[1:]:
        name, sep, value = line.partition(':')
        if sep:
            headers[name.strip().lower()] = value.strip()
    return headers


def searchGateways(timeout=DISCOVERY_TIMEOUT, searchTargets=SEARCH_TARGETS) -> Iterator[str]:
    """
    Multicast SSDP M-SEARCH requests and yield each distinct LOCATION until timeout.

    Raises:
        OSError: The search cannot be sent (e.g. no network)
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)

        for target in searchTargets:
            sock.sendto(buildSearchRequest(target), SSDP_ADDRESS)

        deadline = time.monotonic() + timeout
        seen = set()

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return

            sock.settimeout(remaining)
            try:
                data, address = sock.recvfrom(65507)
            except socket.timeout:
                return

            headers = parseSSDPResponse(data)
            location = headers.get('location') if headers else None
            if location and location not in seen:
                logger.debug(f'SSDP response from {address[0]}: {location}')
                seen.add(location)
                yield location
    finally:
        sock.close()


def parseDescription(content: bytes, location: str) -> Tuple[str, str]:
    """
    Find the first WAN connection service of a device description.

    Returns:
        tuple: (absolute control URL, service type)

    Raises:
        GatewayNotFoundError: The description is not XML or has no WAN connection service
    """
    try:
        root = ElementTree.fromstring(content)
    except ElementTree.ParseError as e:
        raise GatewayNotFoundError(f'Invalid device description at {location}: {e}') from e

    baseURL = _findText(root, 'URLBase') or location

    for service in root.iter():
        if _localName(service.tag) != 'service':
            continue

        serviceType = _findText(service, 'serviceType') or ''
        controlURL = _findText(service, 'controlURL')
        if controlURL and serviceType.startswith(WAN_SERVICE_PREFIXES):
            return urljoin(baseURL, controlURL), serviceType

    raise GatewayNotFoundError(f'No WAN connection service in device description at {location}')


def fetchDescription(location: str, timeout=DISCOVERY_TIMEOUT) -> Tuple[str, str]:
    try:
        response = requests.get(location, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise GatewayNotFoundError(f'Unable to fetch device description {location}: {e}') from e

    return parseDescription(response.content, location)


def discoverGateway(timeout=DISCOVERY_TIMEOUT) -> 'GatewayDevice':
    """
    Find the UPnP Internet gateway device of the local network.

    Raises:
        GatewayNotFoundError: No device answered, or none offers a WAN connection service
    """
    lastError = None

    try:
        with closing(searchGateways(timeout)) as locations:
            for location in locations:
                try:
                    controlURL, serviceType = fetchDescription(location, timeout)
                except GatewayNotFoundError as e:
                    logger.debug(str(e))
                    lastError = e
                    continue

                url = urlparse(location)
                lanAddress = getLocalAddress(url.hostname, url.port or 80)
                logger.info(f'Found gateway at {url.hostname} ({serviceType})')
                return GatewayDevice(controlURL, serviceType, lanAddress)
    except OSError as e:
        raise GatewayNotFoundError(f'SSDP search failed: {e}') from e

    if lastError:
        raise lastError

    raise GatewayNotFoundError('No UPnP Internet gateway device responded')


# =============================================================================
# Gateway control
# =============================================================================


@dataclass
class PortMappingLease:
    internalAddress: str
    internalPort: int
    externalPort: int
    protocol: str = 'TCP'
    leaseDuration: int = PORT_MAPPING_LEASE_DURATION
    description: str = PORT_MAPPING_DESCRIPTION


class GatewayDevice:
    """SOAP client of a WANIPConnection/WANPPPConnection service"""

    def __init__(self, controlURL: str, serviceType: str, lanAddress: Optional[str], timeout=SOAP_TIMEOUT):
        self.controlURL = controlURL
        self.serviceType = serviceType
        self.lanAddress = lanAddress
        self.timeout = timeout

    def __repr__(self):
        return f'GatewayDevice({self.controlURL!r}, {self.serviceType!r}, lanAddress={self.lanAddress!r})'

    def call(self, action: str, arguments=()) -> Dict[str, str]:
        """
        Invoke a SOAP action.

        Args:
            action: Action name, e.g. "AddPortMapping"
            arguments: (name, value) pairs, in the order the action declares them

        Returns:
            dict: Output arguments of the action

        Raises:
            PortMappingError: On transport error, HTTP error or UPnP fault
        """
        body = SOAP_ENVELOPE.format(
            action=action,
            serviceType=self.serviceType,
            arguments=''.join(f'<{name}>{escape(str(value))}</{name}>' for name, value in arguments),
        )
        headers = {
            'Content-Type': 'text/xml; charset="utf-8"',
            'SOAPAction': f'"{self.serviceType}#{action}"',
        }

        try:
            response = requests.post(self.controlURL, data=body.encode('utf-8'), headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise PortMappingError(f'{action} failed: {e}') from e

        try:
            root = ElementTree.fromstring(response.content)
        except ElementTree.ParseError:
            root = None

        if response.status_code != 200:
            code = description = None
            if root is not None:
                code = _findText(root, 'errorCode')
                description = _findText(root, 'errorDescription')

            if code:
                message = f'{action} failed with UPnP error {code}: {description}'
            else:
                message = f'{action} failed with HTTP {response.status_code}'
            raise PortMappingError(message, code=code, description=description)

        if root is None:
            raise PortMappingError(f'{action} returned a malformed response')

        for element in root.iter():
            if _localName(element.tag) == f'{action}Response':
                return {_localName(child.tag): (child.text or '').strip() for child in element}

        raise PortMappingError(f'{action} response has no {action}Response element')

    def getExternalIPAddress(self) -> str:
        return self.call('GetExternalIPAddress').get('NewExternalIPAddress', '')

    def addPortMapping(self, lease: PortMappingLease):
        self.call(
            'AddPortMapping', [
                ('NewRemoteHost', ''),
                ('NewExternalPort', lease.externalPort),
                ('NewProtocol', lease.protocol),
                ('NewInternalPort', lease.internalPort),
                ('NewInternalClient', lease.internalAddress),
                ('NewEnabled', 1),
                ('NewPortMappingDescription', lease.description),
                ('NewLeaseDuration', lease.leaseDuration),
            ]
        )

    def deletePortMapping(self, externalPort: int, protocol: str = 'TCP'):
        self.call(
            'DeletePortMapping', [
                ('NewRemoteHost', ''),
                ('NewExternalPort', externalPort),
                ('NewProtocol', protocol),
            ]
        )


def isIPv4(address) -> bool:
    try:
        return ipaddress.ip_address(address).version == 4
    except ValueError:
        return False


# =============================================================================
# Controller
# =============================================================================


class PortMappingController(threading.Thread):
    """
    Keep a TCP port forwarded on the gateway while the server runs.

    The controller discovers the gateway, warns when the gateway's external address is not
    the advertised one, then adds the mapping and renews it before the lease expires. Failures
    are retried with a linear backoff until maxAttempts consecutive failures, after which it
    gives up for good. Once stopped, it removes the mapping (best-effort) and exits.
    """

    def __init__(
        self,
        port: int,
        advertisedAddress: str = None,
        stopEvent: threading.Event = None,
        discover: Callable[[], GatewayDevice] = None,
        leaseDuration: int = PORT_MAPPING_LEASE_DURATION,
        maxAttempts: int = PORT_MAPPING_MAX_ATTEMPTS,
        description: str = PORT_MAPPING_DESCRIPTION,
    ):
        super().__init__(name='PortMappingController', daemon=True)
        self.port = port
        self.advertisedAddress = advertisedAddress
        self.stopEvent = stopEvent or threading.Event()
        self.discover = discover or discoverGateway
        self.leaseDuration = leaseDuration
        self.maxAttempts = maxAttempts
        self.description = description

        self.gateway = None
        self.lease = None
        self.attempts = 0 # Every AddPortMapping call
        self.attemptCount = 0 # Consecutive failures
        self.mapped = False
        self.abandoned = False

    def stop(self):
        self.stopEvent.set()

    @property
    def stopped(self):
        return self.stopEvent.is_set()

    def listenShutdownSignal(self, signals=(signal.SIGTERM,)) -> bool:
        """
        Stop the controller when one of `signals` is received, then let the signal behave
        like an interrupt so the main thread unwinds as well.

        Returns:
            bool: False when the handlers cannot be installed (e.g. not on the main thread)
        """

        def handler(signum, frame):
            logger.info(f'Received signal {signum}, stopping port mapping')
            self.stop()

            previous = previousHandlers.get(signum)
            if callable(previous):
                previous(signum, frame)
            elif previous == signal.SIG_DFL:
                raise KeyboardInterrupt()

        previousHandlers = {}
        try:
            for sig in signals:
                previousHandlers[sig] = signal.signal(sig, handler)
        except (ValueError, OSError) as e:
            logger.warning(f'Unable to listen for shutdown signal, the port mapping will expire on its own. {e}')
            return False

        return True

    def run(self):
        try:
            self._run()
        except Exception as e:
            logger.exception(f'Port mapping controller stopped unexpectedly: {e}')

    def _run(self):
        try:
            self.gateway = self.discover()
        except PortMappingError as e:
            logger.warning(
                f'Unable to find a UPnP gateway, port {self.port} is not forwarded. '
                f'Forward it manually for access from outside the local network. {e}'
            )
            return

        if self.stopped:
            return

        self._compareExternalAddress()

        if not isIPv4(self.gateway.lanAddress):
            logger.info(f'Local address {self.gateway.lanAddress} is not IPv4, port mapping skipped')
            return

        self.lease = PortMappingLease(
            internalAddress=self.gateway.lanAddress,
            internalPort=self.port,
            externalPort=self.port,
            leaseDuration=self.leaseDuration,
            description=self.description,
        )

        if self._leaseLoop():
            self._release()

    def _compareExternalAddress(self):
        try:
            externalAddress = self.gateway.getExternalIPAddress()
        except PortMappingError as e:
            logger.warning(f'Unable to get external address from gateway. {e}')
            return

        if externalAddress and self.advertisedAddress and externalAddress != self.advertisedAddress:
            logger.warning(
                f'Gateway external address {externalAddress} differs from advertised address '
                f'{self.advertisedAddress}. Use http://{externalAddress}:{self.port}/ for access from outside.'
            )

    def _leaseLoop(self) -> bool:
        """
        Returns:
            bool: True when stopped, False when abandoned
        """
        while not self.stopped:
            self.attempts += 1
            try:
                self.gateway.addPortMapping(self.lease)
            except PortMappingError as e:
                self.attemptCount += 1
                if self.attemptCount >= self.maxAttempts:
                    logger.error(
                        f'Port mapping failed {self.attemptCount} times in a row, giving up. '
                        f'Forward port {self.port} manually. {e}'
                    )
                    self.abandoned = True
                    return False

                delay = RETRY_BASE_DELAY + RETRY_BASE_DELAY * self.attemptCount
                logger.warning(f'Port mapping attempt {self.attemptCount} failed, retrying in {delay}s. {e}')
            else:
                if self.mapped:
                    logger.debug(f'Port mapping {self.lease.externalPort}/{self.lease.protocol} renewed')
                else:
                    logger.info(
                        f'Port {self.lease.externalPort}/{self.lease.protocol} forwarded to '
                        f'{self.lease.internalAddress}:{self.lease.internalPort}'
                    )
                self.mapped = True
                self.attemptCount = 0
                delay = max(self.leaseDuration - LEASE_RENEW_MARGIN, 1)

            if self.stopEvent.wait(delay):
                break

        return True

    def _release(self):
        if self.attempts == 0:
            return

        try:
            self.gateway.deletePortMapping(self.lease.externalPort, self.lease.protocol)
        except PortMappingError as e:
            logger.warning(f'Unable to remove port mapping, it will expire in {self.leaseDuration}s. {e}')
        else:
            logger.info(f'Port mapping {self.lease.externalPort}/{self.lease.protocol} removed')
