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

"""Load the workload to VIP and VIP to route identifier mappings.

Each mapping lives in a directory holding one file per key: the file name is
the key and the trimmed file contents are the value.

  <podip-vip-mappings>/10.32.0.5        contains  203.0.113.10
  <vip-routeid-mappings>/203.0.113.10   contains  100

A fresh snapshot is read on every reconciliation cycle.
"""

import collections
import logging
import os

WorkloadRoute = collections.namedtuple(
    'WorkloadRoute', ['workload_address', 'vip', 'route_id'])

# Route IDs double as routing table numbers; these name the kernel default,
# main and local tables.
RESERVED_ROUTE_IDS = (253, 254, 255)
# Marks and table numbers are 32 bit.
MAX_ROUTE_ID = 0xFFFFFFFF


def IsValidRouteId(route_id):
  """Check a route ID can serve as both a packet mark and a table number."""
  return 0 < route_id <= MAX_ROUTE_ID and route_id not in RESERVED_ROUTE_IDS


class MappingSnapshot(object):
  """An immutable view of the egress mappings for one reconciliation cycle."""

  def __init__(self, workload_to_vip=None, vip_to_route_id=None):
    """Constructor.

    Args:
      workload_to_vip: dict, workload address strings mapped to VIP strings.
      vip_to_route_id: dict, VIP strings mapped to positive integer route IDs.
    """
    self._workload_to_vip = tuple(sorted((workload_to_vip or {}).items()))
    self._vip_to_route_id = tuple(sorted((vip_to_route_id or {}).items()))
    self.routes, self.errors = self._ResolveRoutes()

  def _ResolveRoutes(self):
    """Join the two mappings into workload routes.

    Returns:
      tuple, (a tuple of WorkloadRoute, a tuple of string error messages).
    """
    errors = []
    route_ids = {}
    claimed = {}
    for vip, route_id in self._vip_to_route_id:
      if not IsValidRouteId(route_id):
        errors.append(
            'Route ID %s of VIP %s is reserved or out of range.' %
            (route_id, vip))
        continue
      if route_id in claimed:
        errors.append(
            'Route ID %s of VIP %s is already used by VIP %s.' %
            (route_id, vip, claimed[route_id]))
        continue
      claimed[route_id] = vip
      route_ids[vip] = route_id

    routes = []
    for workload_address, vip in self._workload_to_vip:
      if vip not in route_ids:
        errors.append(
            'No route ID for VIP %s of workload %s.' % (vip, workload_address))
        continue
      routes.append(WorkloadRoute(workload_address, vip, route_ids[vip]))
    return tuple(routes), tuple(errors)

  @property
  def workload_to_vip(self):
    return dict(self._workload_to_vip)

  @property
  def vip_to_route_id(self):
    return dict(self._vip_to_route_id)

  def __eq__(self, other):
    if not isinstance(other, MappingSnapshot):
      return NotImplemented
    return (self._workload_to_vip == other._workload_to_vip and
            self._vip_to_route_id == other._vip_to_route_id)

  def __ne__(self, other):
    result = self.__eq__(other)
    return result if result is NotImplemented else not result

  def __hash__(self):
    return hash((self._workload_to_vip, self._vip_to_route_id))

  def __repr__(self):
    return 'MappingSnapshot(%r, %r)' % (
        self.workload_to_vip, self.vip_to_route_id)


def ReadMappingDirectory(path, logger=logging):
  """Read a directory of one-file-per-key mappings.

  Hidden entries, such as the ..data links of a Kubernetes ConfigMap volume,
  and sub-directories are ignored. Entries that cannot be read or are empty
  are skipped.

  Args:
    path: string, the directory to read.
    logger: logger object, used to write to SysLog and the console.

  Returns:
    dict, file names mapped to the stripped file contents.
  """
  mapping = {}
  try:
    names = sorted(os.listdir(path))
  except (IOError, OSError) as e:
    logger.warning('Unable to read mapping directory %s. %s.', path, str(e))
    return mapping

  for name in names:
    entry = os.path.join(path, name)
    if name.startswith('.') or not os.path.isfile(entry):
      continue
    try:
      with open(entry) as fp:
        value = fp.read().strip()
    except (IOError, OSError) as e:
      logger.warning('Unable to read mapping %s. %s.', entry, str(e))
      continue
    if not value:
      logger.warning('Skipping empty mapping %s.', entry)
      continue
    mapping[name] = value
  return mapping


def ParseRouteIds(vip_to_route_id, logger=logging):
  """Convert route identifier strings to usable integer route IDs.

  Non-integer and non-positive values, values above 32 bits, and the numbers
  of the kernel default, main and local routing tables are skipped.

  Args:
    vip_to_route_id: dict, VIP strings mapped to route identifier strings.
    logger: logger object, used to write to SysLog and the console.

  Returns:
    dict, VIP strings mapped to integer route identifiers.
  """
  route_ids = {}
  for vip, value in vip_to_route_id.items():
    try:
      route_id = int(value)
    except ValueError:
      route_id = 0
    if not IsValidRouteId(route_id):
      logger.warning('Invalid route ID "%s" for VIP %s.', value, vip)
      continue
    route_ids[vip] = route_id
  return route_ids


def LoadMappingSnapshot(podip_vip_dir, vip_routeid_dir, logger=logging):
  """Build a mapping snapshot from the two mapping directories.

  Args:
    podip_vip_dir: string, the directory mapping workload addresses to VIPs.
    vip_routeid_dir: string, the directory mapping VIPs to route IDs.
    logger: logger object, used to write to SysLog and the console.

  Returns:
    MappingSnapshot, the mappings read from disk.
  """
  workload_to_vip = ReadMappingDirectory(podip_vip_dir, logger=logger)
  vip_to_route_id = ParseRouteIds(
      ReadMappingDirectory(vip_routeid_dir, logger=logger), logger=logger)
  logger.debug(
      'Loaded %d workload mappings and %d route IDs.',
      len(workload_to_vip), len(vip_to_route_id))
  return MappingSnapshot(workload_to_vip, vip_to_route_id)
