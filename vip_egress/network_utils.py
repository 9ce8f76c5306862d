#!/usr/bin/python
# Copyright 2019 Google Inc. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Utilities for inspecting network interfaces and their addresses."""

import ipaddress
import logging
import os
import subprocess

SYS_CLASS_NET = '/sys/class/net'


def _NormalizeAddress(address):
  """Return the canonical text form of an IP address, or the input unchanged."""
  try:
    return str(ipaddress.ip_address(address.strip()))
  except ValueError:
    return address.strip()


class NetworkUtils(object):
  """System network interface utilities."""

  def __init__(self, logger=logging):
    """Constructor.

    Args:
      logger: logger object, used to write to SysLog and the console.
    """
    self.logger = logger

  def GetInterfaces(self):
    """List the network interfaces known to the kernel.

    Returns:
      list, the string network interface names.
    """
    try:
      return sorted(os.listdir(SYS_CLASS_NET))
    except (IOError, OSError) as e:
      self.logger.warning('Unable to list network interfaces. %s.', str(e))
      return []

  def InterfaceExists(self, interface):
    """Check whether a network interface exists.

    Args:
      interface: string, the network interface name.

    Returns:
      bool, True if the interface exists.
    """
    return interface in self.GetInterfaces()

  def GetInterfaceAddresses(self, interface):
    """Retrieve the IP addresses currently bound to a network interface.

    Args:
      interface: string, the network interface name.

    Returns:
      list, the IP address strings without prefix lengths.
    """
    command = ['ip', '-o', 'addr', 'show', 'dev', interface]
    try:
      process = subprocess.Popen(
          command, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
      stdout, stderr = process.communicate()
    except OSError as e:
      self.logger.warning('Exception running %s. %s.', command, str(e))
      return []
    if process.returncode:
      message = 'Non-zero exit status running %s. %s.'
      error = stderr.decode('utf-8', 'replace').strip()
      self.logger.warning(message, command, error)
      return []

    addresses = []
    for line in stdout.decode('utf-8', 'replace').split('\n'):
      fields = line.split()
      for family in ('inet', 'inet6'):
        if family in fields:
          index = fields.index(family) + 1
          if index < len(fields):
            addresses.append(_NormalizeAddress(fields[index].split('/')[0]))
    return addresses

  def IsLocal(self, address, interface):
    """Check whether an address is bound to a network interface right now.

    Args:
      address: string, the IP address to look for.
      interface: string, the network interface name.

    Returns:
      bool, True if the interface currently holds the address.
    """
    return _NormalizeAddress(address) in self.GetInterfaceAddresses(interface)
