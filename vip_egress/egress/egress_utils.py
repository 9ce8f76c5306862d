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

"""Utilities for configuring packet marking, NAT and policy routing.

Every mutation checks for the object first, so adding an object that exists
or removing one that is absent is a no-op. Command failures are logged and
never raised; the next reconciliation cycle retries them.

Commands used:
  iptables -w -t mangle -A EGRESS -s $POD_IP -j MARK --set-mark $ID/$ID
  iptables -w -t nat -I POSTROUTING -o eth0 -m mark --mark $ID/$ID \
      -j SNAT --to-source $VIP
  ip route add default via $VIP dev eth0 table $ID
  ip rule add fwmark $ID/$ID table $ID
"""

import logging
import os
import subprocess

from vip_egress import constants
from vip_egress import file_utils
from vip_egress.egress import egress_plan

# Outcomes that mean the object is already in the requested state.
ALREADY_EXISTS = ('File exists', 'already exists')
ALREADY_ABSENT = (
    'No such file or directory', 'No such process', 'does not exist',
    'Cannot find device')

# Upper bound on removing duplicated policy rules in one call.
MAX_RULE_DELETIONS = 16


class EgressUtils(object):
  """Kernel packet filter and policy routing configuration utilities."""

  def __init__(self, logger=logging, rt_tables_dir=None):
    """Constructor.

    Args:
      logger: logger object, used to write to SysLog and the console.
      rt_tables_dir: string, the directory of route table name registrations.
    """
    self.logger = logger
    self.rt_tables_dir = rt_tables_dir or constants.RT_TABLES_DIR
    self.handlers = {
        egress_plan.ENSURE_CHAIN: self.EnsureChain,
        egress_plan.FLUSH_CHAIN: self.FlushChain,
        egress_plan.DELETE_CHAIN: self.DeleteChain,
        egress_plan.ENSURE_RULE: self.EnsureRule,
        egress_plan.REMOVE_RULE: self.RemoveRule,
        egress_plan.ENSURE_ROUTE_TABLE: self.EnsureRouteTable,
        egress_plan.REMOVE_ROUTE_TABLE: self.RemoveRouteTable,
        egress_plan.ENSURE_ROUTE: self.EnsureRoute,
        egress_plan.FLUSH_ROUTES: self.FlushRoutes,
        egress_plan.ENSURE_ROUTE_RULE: self.EnsureRouteRule,
        egress_plan.REMOVE_ROUTE_RULE: self.RemoveRouteRule,
        egress_plan.FLUSH_ROUTE_CACHE: self.FlushRouteCache,
    }

  def _RunCommand(self, command, expected=None, quiet=False):
    """Run a command and return its exit status and output.

    Args:
      command: list, the command and its arguments.
      expected: tuple, error message fragments that only mean the object is
          already in the requested state.
      quiet: bool, True if a non-zero exit status is a normal answer, as for
          existence checks.

    Returns:
      tuple, the integer exit status (-1 if the command could not run) and
          the decoded standard output.
    """
    try:
      process = subprocess.Popen(
          command, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
      stdout, stderr = process.communicate()
    except OSError as e:
      self.logger.warning('Exception running %s. %s.', command, str(e))
      return -1, ''

    if process.returncode:
      error = stderr.decode('utf-8', 'replace').strip()
      if quiet or any(message in error for message in expected or ()):
        self.logger.debug(
            'Exit status %s running %s. %s.', process.returncode, command,
            error)
      else:
        message = 'Non-zero exit status running %s. %s.'
        self.logger.warning(message, command, error)
    return process.returncode, stdout.decode('utf-8', 'replace')

  def _RunIptables(self, table, args, expected=None, quiet=False):
    command = ['iptables', '-w', '-t', table]
    command.extend(args)
    return self._RunCommand(command, expected=expected, quiet=quiet)

  def _RunIp(self, args, expected=None, quiet=False):
    command = ['ip']
    command.extend(args)
    return self._RunCommand(command, expected=expected, quiet=quiet)

  def Execute(self, operation):
    """Run one plan operation.

    Args:
      operation: egress_plan.Operation, the operation to run.

    Raises:
      ValueError: the operation is unknown.
    """
    handler = self.handlers.get(operation.action)
    if not handler:
      raise ValueError('Unknown egress operation %s.' % operation.action)
    handler(*operation.args)

  def ExecutePlan(self, plan):
    """Run plan operations in order.

    Args:
      plan: list, the egress_plan.Operation values to run.
    """
    for operation in plan:
      self.Execute(operation)

  def ChainExists(self, table, chain):
    returncode, _ = self._RunIptables(table, ['-S', chain], quiet=True)
    return returncode == 0

  def EnsureChain(self, table, chain):
    """Create a chain unless it exists."""
    if self.ChainExists(table, chain):
      return
    self.logger.debug('Creating chain %s in table %s.', chain, table)
    self._RunIptables(table, ['-N', chain], expected=ALREADY_EXISTS)

  def FlushChain(self, table, chain):
    """Remove every rule of a chain if it exists."""
    if not self.ChainExists(table, chain):
      return
    self.logger.debug('Flushing chain %s in table %s.', chain, table)
    self._RunIptables(table, ['-F', chain], expected=ALREADY_ABSENT)

  def DeleteChain(self, table, chain):
    """Delete an empty, unreferenced chain if it exists."""
    if not self.ChainExists(table, chain):
      return
    self.logger.debug('Deleting chain %s in table %s.', chain, table)
    self._RunIptables(table, ['-X', chain], expected=ALREADY_ABSENT)

  def RuleExists(self, rule):
    """Check whether an iptables rule is present.

    Args:
      rule: egress_plan.IptablesRule, the rule to look for.

    Returns:
      bool, True if the rule exists.
    """
    args = ['-C', rule.chain]
    args.extend(rule.spec)
    returncode, _ = self._RunIptables(rule.table, args, quiet=True)
    return returncode == 0

  def EnsureRule(self, rule):
    """Insert or append an iptables rule unless it exists.

    Args:
      rule: egress_plan.IptablesRule, the rule to add.
    """
    if self.RuleExists(rule):
      return
    args = ['-I' if rule.insert else '-A', rule.chain]
    args.extend(rule.spec)
    self.logger.debug('Adding %s rule %s.', rule.table, ' '.join(args))
    self._RunIptables(rule.table, args, expected=ALREADY_EXISTS)

  def RemoveRule(self, rule):
    """Delete an iptables rule if it exists.

    Args:
      rule: egress_plan.IptablesRule, the rule to delete.
    """
    if not self.RuleExists(rule):
      return
    args = ['-D', rule.chain]
    args.extend(rule.spec)
    self.logger.debug('Removing %s rule %s.', rule.table, ' '.join(args))
    self._RunIptables(rule.table, args, expected=ALREADY_ABSENT)

  def _RouteTablePath(self, policy_route):
    return os.path.join(self.rt_tables_dir, '%s.conf' % policy_route.table_name)

  def EnsureRouteTable(self, policy_route):
    """Register the route table name for a route ID.

    Args:
      policy_route: egress_plan.PolicyRoute, the route table to register.
    """
    path = self._RouteTablePath(policy_route)
    content = '%d %s\n' % (policy_route.route_id, policy_route.table_name)
    try:
      if file_utils.WriteFile(path, content):
        self.logger.debug('Registered route table %s.', path)
    except (IOError, OSError) as e:
      self.logger.warning('Unable to write route table %s. %s.', path, str(e))

  def RemoveRouteTable(self, policy_route):
    """Remove the route table name registration for a route ID.

    Args:
      policy_route: egress_plan.PolicyRoute, the route table to unregister.
    """
    path = self._RouteTablePath(policy_route)
    try:
      if file_utils.RemoveFile(path):
        self.logger.debug('Removed route table %s.', path)
    except OSError as e:
      self.logger.warning('Unable to remove route table %s. %s.', path, str(e))

  def EnsureRoute(self, policy_route):
    """Add the default route through the VIP to the route table.

    Args:
      policy_route: egress_plan.PolicyRoute, the route to add.
    """
    args = [
        'route', 'add', 'default', 'via', policy_route.vip,
        'dev', policy_route.interface, 'table', str(policy_route.route_id),
    ]
    self._RunIp(args, expected=ALREADY_EXISTS)

  def FlushRoutes(self, policy_route):
    """Remove every route of the route table.

    Args:
      policy_route: egress_plan.PolicyRoute, the route table to flush.
    """
    args = ['route', 'flush', 'table', str(policy_route.route_id)]
    self._RunIp(args, expected=ALREADY_ABSENT)

  def _RouteRuleMatches(self, line, policy_route):
    """Check whether an ip rule show line selects the route table by mark."""
    fields = line.split()
    mark = '0x%x/0x%x' % (policy_route.route_id, policy_route.route_id)
    tables = (policy_route.table_name, str(policy_route.route_id))
    for key, values in (('fwmark', (mark,)), ('lookup', tables)):
      if key not in fields:
        return False
      index = fields.index(key) + 1
      if index >= len(fields) or fields[index] not in values:
        return False
    return True

  def RouteRuleExists(self, policy_route):
    """Check whether the mark based rule selecting the route table exists.

    Args:
      policy_route: egress_plan.PolicyRoute, the rule to look for.

    Returns:
      bool, True if the rule exists.
    """
    returncode, stdout = self._RunIp(['rule', 'show'], quiet=True)
    if returncode:
      return False
    return any(
        self._RouteRuleMatches(line, policy_route)
        for line in stdout.split('\n'))

  def EnsureRouteRule(self, policy_route):
    """Add the rule selecting the route table by mark unless it exists.

    Args:
      policy_route: egress_plan.PolicyRoute, the rule to add.
    """
    if self.RouteRuleExists(policy_route):
      return
    args = [
        'rule', 'add', 'fwmark', egress_plan.MarkValue(policy_route.route_id),
        'table', str(policy_route.route_id),
    ]
    self._RunIp(args, expected=ALREADY_EXISTS)

  def RemoveRouteRule(self, policy_route):
    """Delete every rule selecting the route table by mark.

    Args:
      policy_route: egress_plan.PolicyRoute, the rule to delete.
    """
    args = [
        'rule', 'del', 'fwmark', egress_plan.MarkValue(policy_route.route_id),
        'table', str(policy_route.route_id),
    ]
    for _ in range(MAX_RULE_DELETIONS):
      if not self.RouteRuleExists(policy_route):
        return
      returncode, _ = self._RunIp(args, expected=ALREADY_ABSENT)
      if returncode:
        return

  def FlushRouteCache(self):
    self._RunIp(['route', 'flush', 'cache'])
