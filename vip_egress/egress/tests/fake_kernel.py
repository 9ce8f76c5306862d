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

"""An in-memory stand-in for the iptables and ip command line tools.

Patch subprocess.Popen with FakeKernel.Popen to run egress_utils and
network_utils against it.
"""

import os

BUILTIN_CHAINS = {
    'mangle': ('PREROUTING', 'INPUT', 'FORWARD', 'OUTPUT', 'POSTROUTING'),
    'nat': ('PREROUTING', 'INPUT', 'OUTPUT', 'POSTROUTING'),
}
BUILTIN_TARGETS = ('ACCEPT', 'DROP', 'RETURN', 'MARK', 'SNAT', 'MASQUERADE')


class FakeProcess(object):

  def __init__(self, returncode, stdout='', stderr=''):
    self.returncode = returncode
    self.stdout = stdout.encode('utf-8')
    self.stderr = stderr.encode('utf-8')

  def communicate(self):
    return self.stdout, self.stderr


class FakeKernel(object):
  """Packet filter, routing and interface address state."""

  def __init__(self, rt_tables_dir, addresses=None):
    self.rt_tables_dir = rt_tables_dir
    self.addresses = addresses or {'eth0': ['192.0.2.7']}
    self.chains = {}
    for table, chains in BUILTIN_CHAINS.items():
      for chain in chains:
        self.chains[(table, chain)] = []
    self.routes = {}
    self.ip_rules = []
    self.cache_flushes = 0
    self.failures = []
    self.commands = []

  def Popen(self, command, stdout=None, stderr=None):
    self.commands.append(list(command))
    for failure in self.failures:
      if command[:len(failure)] == failure:
        return FakeProcess(1, stderr='Resource temporarily unavailable')
    if command[0] == 'iptables':
      return self._Iptables(command[4:], command[3])
    return self._Ip(command[1:])

  def State(self):
    """Return everything observable, excluding built-in empty chains."""
    chains = dict(
        (key, tuple(rules)) for key, rules in self.chains.items()
        if rules or key[1] not in BUILTIN_CHAINS[key[0]])
    routes = dict(
        (table, tuple(sorted(entries)))
        for table, entries in self.routes.items() if entries)
    return {
        'chains': chains,
        'routes': routes,
        'ip_rules': tuple(self.ip_rules),
        'rt_tables': self.RouteTables(),
    }

  def RouteTables(self):
    tables = {}
    if os.path.isdir(self.rt_tables_dir):
      for name in sorted(os.listdir(self.rt_tables_dir)):
        with open(os.path.join(self.rt_tables_dir, name)) as fp:
          tables[name] = fp.read()
    return tables

  def Rules(self, table, chain):
    return self.chains.get((table, chain), [])

  def _Iptables(self, args, table):
    action, chain, spec = args[0], args[1], tuple(args[2:])
    key = (table, chain)
    exists = key in self.chains
    missing = 'iptables: No chain/target/match by that name.'

    if action == '-S':
      return FakeProcess(0 if exists else 1, stderr='' if exists else missing)
    if action == '-N':
      if exists:
        return FakeProcess(1, stderr='iptables: Chain already exists.')
      self.chains[key] = []
      return FakeProcess(0)
    if not exists:
      return FakeProcess(1, stderr=missing)

    rules = self.chains[key]
    if action == '-C':
      if spec in rules:
        return FakeProcess(0)
      return FakeProcess(
          1, stderr='iptables: Bad rule (does a matching rule exist in that '
          'chain?).')
    if action in ('-A', '-I'):
      target = spec[spec.index('-j') + 1]
      if target not in BUILTIN_TARGETS and (table, target) not in self.chains:
        return FakeProcess(
            2, stderr="iptables v1.8.7 (legacy): Couldn't load target `%s'" %
            target)
      if action == '-A':
        rules.append(spec)
      else:
        rules.insert(0, spec)
      return FakeProcess(0)
    if action == '-D':
      if spec not in rules:
        return FakeProcess(1, stderr='iptables: Bad rule.')
      rules.remove(spec)
      return FakeProcess(0)
    if action == '-F':
      del rules[:]
      return FakeProcess(0)
    if action == '-X':
      if rules:
        return FakeProcess(1, stderr='iptables: Directory not empty.')
      for (other_table, _), other_rules in self.chains.items():
        if other_table == table and ('-j', chain) in [
            rule[-2:] for rule in other_rules]:
          return FakeProcess(1, stderr='iptables: Too many links.')
      del self.chains[key]
      return FakeProcess(0)
    return FakeProcess(2, stderr='Unknown action %s' % action)

  def _TableName(self, table_id):
    for content in self.RouteTables().values():
      fields = content.split()
      if fields and fields[0] == table_id:
        return fields[1]
    return table_id

  def _Ip(self, args):
    if args[:2] == ['-o', 'addr']:
      interface = args[-1]
      if interface not in self.addresses:
        return FakeProcess(
            1, stderr='Device "%s" does not exist.' % interface)
      lines = [
          '2: %s    inet %s/32 scope global %s\\       valid_lft forever' %
          (interface, address, interface)
          for address in self.addresses[interface]]
      return FakeProcess(0, stdout='\n'.join(lines) + '\n')

    if args == ['route', 'flush', 'cache']:
      self.cache_flushes += 1
      return FakeProcess(0)
    if args[:2] == ['route', 'add']:
      table = args[args.index('table') + 1]
      route = tuple(args[2:args.index('table')])
      entries = self.routes.setdefault(table, set())
      if route in entries:
        return FakeProcess(2, stderr='RTNETLINK answers: File exists')
      entries.add(route)
      return FakeProcess(0)
    if args[:3] == ['route', 'flush', 'table']:
      self.routes.pop(args[3], None)
      return FakeProcess(0)

    if args == ['rule', 'show']:
      lines = ['0:\tfrom all lookup local']
      for index, (mark, table) in enumerate(self.ip_rules):
        value, mask = [int(part) for part in mark.split('/')]
        lines.append('%d:\tfrom all fwmark 0x%x/0x%x lookup %s' % (
            32000 + index, value, mask, self._TableName(table)))
      lines.append('32766:\tfrom all lookup main')
      return FakeProcess(0, stdout='\n'.join(lines) + '\n')
    if args[:2] == ['rule', 'add']:
      self.ip_rules.append((args[3], args[5]))
      return FakeProcess(0)
    if args[:2] == ['rule', 'del']:
      rule = (args[3], args[5])
      if rule not in self.ip_rules:
        return FakeProcess(
            2, stderr='RTNETLINK answers: No such file or directory')
      self.ip_rules.remove(rule)
      return FakeProcess(0)
    return FakeProcess(1, stderr='Unknown command %s' % args)
