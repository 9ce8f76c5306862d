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

"""Redirect workload egress traffic through the node holding its VIP.

Load the workload to VIP and VIP to route ID mappings, then mark, translate
and policy route workload traffic depending on whether this node currently
holds each VIP. Run once, or repeat on an interval so VIP failover between
nodes is picked up. On SIGTERM or SIGINT the periodic loop stops and every
managed rule is removed.

Debugging:
  iptables -nvL -t mangle
  iptables -t raw -I PREROUTING -j TRACE
  iptables -t mangle -A EGRESS -j LOG --log-prefix "egress: " --log-level 4
"""

import logging.handlers
import optparse
import os
import re
import select
import signal
import sys

from vip_egress import config_manager
from vip_egress import constants
from vip_egress import file_utils
from vip_egress import logger
from vip_egress import network_utils
from vip_egress.egress import egress_plan
from vip_egress.egress import egress_reconciler
from vip_egress.egress import egress_utils
from vip_egress.egress import mappings

LOCKFILE = constants.LOCALSTATEDIR + '/lock/vip_egress.lock'

CONFIG_DEFAULTS = {
    'Egress': {
        'interface': 'eth0',
        'pod_subnet': '10.32.0.0/12',
        'service_subnet': '10.96.0.0/12',
        'podip_vip_mappings': 'config/podip_vip_mapping/',
        'vip_routeid_mappings': 'config/vip_routeid_mapping/',
        'route_table_prefix': 'egress',
        'chain': 'EGRESS',
        'rt_tables_dir': constants.RT_TABLES_DIR,
    },
}

INTERVAL_REGEX = re.compile(r'\A(\d+(?:\.\d*)?|\.\d+)([smhd]?)\Z')
INTERVAL_UNITS = {'': 1, 's': 1, 'm': 60, 'h': 3600, 'd': 86400}


def ParseInterval(value):
  """Parse a sleep(1) style duration.

  Args:
    value: string, a number with an optional s, m, h or d suffix.

  Returns:
    float, the duration in seconds or None when value is empty.

  Raises:
    ValueError: the duration cannot be parsed.
  """
  if value is None or not value.strip():
    return None
  match = INTERVAL_REGEX.match(value.strip())
  if not match:
    raise ValueError('Invalid duration "%s".' % value)
  return float(match.group(1)) * INTERVAL_UNITS[match.group(2)]


class EgressDaemon(object):
  """Reconcile egress rules once or on an interval."""

  def __init__(
      self, options, podip_vip_dir, vip_routeid_dir, update_interval=None,
      delete=False, rt_tables_dir=None, debug=False):
    """Constructor.

    Args:
      options: egress_plan.EgressOptions, the node configuration.
      podip_vip_dir: string, the directory mapping workload addresses to VIPs.
      vip_routeid_dir: string, the directory mapping VIPs to route IDs.
      update_interval: float, seconds between passes, None to run once.
      delete: bool, True to remove all egress rules and exit.
      rt_tables_dir: string, the directory of route table registrations.
      debug: bool, True if debug output should write to the console.
    """
    facility = logging.handlers.SysLogHandler.LOG_DAEMON
    self.logger = logger.Logger(
        name='vip-egress', debug=debug, facility=facility)
    self.podip_vip_dir = podip_vip_dir
    self.vip_routeid_dir = vip_routeid_dir
    self.update_interval = update_interval
    self.delete = delete
    self.stop_signal = None
    self.stop_reader = None
    self.stop_writer = None

    self.network_utils = network_utils.NetworkUtils(logger=self.logger)
    self.egress_utils = egress_utils.EgressUtils(
        logger=self.logger, rt_tables_dir=rt_tables_dir)
    self.reconciler = egress_reconciler.EgressReconciler(
        self.egress_utils, self.network_utils, options, logger=self.logger)

    try:
      with file_utils.LockFile(LOCKFILE):
        self.logger.info('Starting VIP egress daemon.')
        self.Run()
    except (IOError, OSError) as e:
      self.logger.warning(str(e))

  def HandleSignal(self, signum, _):
    """Request a stop and wake the periodic loop if it is sleeping.

    The handler runs on the main thread, possibly in the middle of the sleep,
    so it only records the signal and writes to a non-blocking pipe.

    Args:
      signum: int, the signal received.
    """
    self.stop_signal = signum
    if self.stop_writer is not None:
      try:
        os.write(self.stop_writer, b'\0')
      except BlockingIOError:
        # A wake-up is already pending.
        pass

  def WaitForStop(self, timeout):
    """Sleep until a stop is requested or the timeout expires.

    Args:
      timeout: float, the maximum number of seconds to sleep.

    Returns:
      bool, True if a stop was requested.
    """
    if self.stop_signal is None:
      select.select([self.stop_reader], [], [], timeout)
    return self.stop_signal is not None

  def LoadSnapshot(self):
    return mappings.LoadMappingSnapshot(
        self.podip_vip_dir, self.vip_routeid_dir, logger=self.logger)

  def _RunPass(self):
    """Apply a freshly loaded snapshot, logging any unexpected failure."""
    try:
      self.reconciler.Reconcile(self.LoadSnapshot())
    except Exception as e:
      self.logger.exception('Exception applying egress rules. %s.', e)

  def Run(self):
    """Run once, delete, or loop until a stop is requested."""
    if self.delete:
      self.reconciler.Reconcile(self.LoadSnapshot(), delete=True)
      return

    if not self.update_interval:
      self.reconciler.Reconcile(self.LoadSnapshot())
      return

    self.stop_reader, self.stop_writer = os.pipe()
    os.set_blocking(self.stop_writer, False)
    signal.signal(signal.SIGTERM, self.HandleSignal)
    signal.signal(signal.SIGINT, self.HandleSignal)
    try:
      self._RunPass()
      while not self.WaitForStop(self.update_interval):
        self._RunPass()
    finally:
      reader, writer = self.stop_reader, self.stop_writer
      self.stop_reader = self.stop_writer = None
      os.close(reader)
      os.close(writer)

    self.logger.info(
        'Received signal %s, removing egress rules before exiting.',
        self.stop_signal)
    self.reconciler.Reconcile(self.LoadSnapshot(), delete=True)


def main():
  parser = optparse.OptionParser(
      description='Redirects container traffic from all nodes to the node '
      'with the VIP.')
  parser.add_option(
      '-d', '--delete', action='store_true', dest='delete',
      help='delete all iptables and routing rules associated with the egress '
      'and exit.')
  parser.add_option(
      '-i', '--interface', dest='interface',
      help='the network interface to use. Default is eth0.')
  parser.add_option(
      '-p', '--pod-subnet', dest='pod_subnet',
      help='the Kubernetes pod IP allocation range. Default is 10.32.0.0/12.')
  parser.add_option(
      '-r', '--vip-routeid-mappings', dest='vip_routeid_mappings',
      help='the directory that contains mappings from VIP to route ID.')
  parser.add_option(
      '-s', '--service-subnet', dest='service_subnet',
      help='the Kubernetes service IP allocation range. '
      'Default is 10.96.0.0/12.')
  parser.add_option(
      '-u', '--update-interval', dest='update_interval',
      help='how often to check whether the rules need to be updated based '
      'upon VIP changes, e.g. 10s or 1m. Default is to run once.')
  parser.add_option(
      '-v', '--podip-vip-mappings', dest='podip_vip_mappings',
      help='the directory that contains mappings from pod IP to VIP.')
  parser.add_option(
      '--debug', action='store_true', dest='debug',
      help='print debug output to the console.')
  (options, _) = parser.parse_args()

  instance_config = config_manager.ConfigManager(
      config_defaults=CONFIG_DEFAULTS)
  if not instance_config.GetOptionBool('Daemons', 'egress_daemon'):
    return

  def GetOption(name):
    value = getattr(options, name, None)
    return value or instance_config.GetOptionString('Egress', name)

  try:
    update_interval = ParseInterval(GetOption('update_interval'))
  except ValueError as e:
    parser.error(str(e))

  debug = bool(options.debug)
  interface = GetOption('interface')
  startup_logger = logger.Logger(name='vip-egress', debug=debug)
  if not network_utils.NetworkUtils(
      logger=startup_logger).InterfaceExists(interface):
    startup_logger.error('Network interface %s does not exist.', interface)
    sys.exit(1)

  egress_options = egress_plan.EgressOptions(
      interface=interface,
      pod_subnet=GetOption('pod_subnet'),
      service_subnet=GetOption('service_subnet'),
      route_table_prefix=GetOption('route_table_prefix'),
      chain=GetOption('chain'))
  EgressDaemon(
      egress_options,
      podip_vip_dir=GetOption('podip_vip_mappings'),
      vip_routeid_dir=GetOption('vip_routeid_mappings'),
      update_interval=update_interval,
      delete=bool(options.delete),
      rt_tables_dir=GetOption('rt_tables_dir'),
      debug=debug)


if __name__ == '__main__':
  main()
