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

"""Compute the desired egress state and the ordered plans that converge to it.

Nothing in this module touches the kernel. The desired state is derived from
a mapping snapshot and the VIPs currently held by the egress interface, and is
turned into an ordered list of idempotent operations executed by
egress_utils.EgressUtils.

For every workload address the classifying chain marks its traffic with the
route ID of its VIP. For every distinct VIP the node is either:

  primary: it holds the VIP, so forwarded marked traffic is translated to the
      VIP on the egress interface (SNAT).
  secondary: another node holds the VIP, so marked traffic is exempt from
      translation (RETURN) and steered to the VIP through a dedicated route
      table selected by the mark.
"""

import collections

MANGLE = 'mangle'
NAT = 'nat'
PREROUTING = 'PREROUTING'
FORWARD = 'FORWARD'
POSTROUTING = 'POSTROUTING'

# Plan operations, executed by egress_utils.EgressUtils.Execute.
ENSURE_CHAIN = 'ensure-chain'
FLUSH_CHAIN = 'flush-chain'
DELETE_CHAIN = 'delete-chain'
ENSURE_RULE = 'ensure-rule'
REMOVE_RULE = 'remove-rule'
ENSURE_ROUTE_TABLE = 'ensure-route-table'
REMOVE_ROUTE_TABLE = 'remove-route-table'
ENSURE_ROUTE = 'ensure-route'
FLUSH_ROUTES = 'flush-routes'
ENSURE_ROUTE_RULE = 'ensure-route-rule'
REMOVE_ROUTE_RULE = 'remove-route-rule'
FLUSH_ROUTE_CACHE = 'flush-route-cache'

EgressOptions = collections.namedtuple(
    'EgressOptions',
    ['interface', 'pod_subnet', 'service_subnet', 'route_table_prefix',
     'chain'])

IptablesRule = collections.namedtuple(
    'IptablesRule', ['table', 'chain', 'spec', 'insert'])

PolicyRoute = collections.namedtuple(
    'PolicyRoute', ['route_id', 'table_name', 'vip', 'interface'])

VipState = collections.namedtuple(
    'VipState',
    ['vip', 'route_id', 'primary', 'workload_addresses', 'rules',
     'policy_route'])

DesiredState = collections.namedtuple(
    'DesiredState',
    ['chain', 'bypass_rules', 'hook_rule', 'workload_rules', 'vip_states'])

Operation = collections.namedtuple('Operation', ['action', 'args'])


def RouteTableName(prefix, route_id):
  return '%s_%d' % (prefix, route_id)


def MarkValue(route_id):
  return '%d/%d' % (route_id, route_id)


def BypassRules(options):
  """Rules returning intra-cluster traffic before it can be marked."""
  return [
      IptablesRule(
          MANGLE, options.chain, ('-d', subnet, '-j', 'RETURN'), False)
      for subnet in (options.pod_subnet, options.service_subnet)
  ]


def HookRule(options):
  """The rule sending inbound traffic through the classifying chain."""
  return IptablesRule(MANGLE, PREROUTING, ('-j', options.chain), False)


def WorkloadMarkRule(route, options):
  return IptablesRule(
      MANGLE, options.chain,
      ('-s', route.workload_address, '-j', 'MARK',
       '--set-mark', MarkValue(route.route_id)),
      False)


def ForwardMarkRule(workload_address, route_id, options):
  return IptablesRule(
      MANGLE, FORWARD,
      ('-s', workload_address, '-i', options.interface,
       '-o', options.interface, '-j', 'MARK', '--set-mark',
       MarkValue(route_id)),
      False)


def SnatRule(vip, route_id, options):
  return IptablesRule(
      NAT, POSTROUTING,
      ('-o', options.interface, '-m', 'mark', '--mark', MarkValue(route_id),
       '-j', 'SNAT', '--to-source', vip),
      True)


def ReturnRule(route_id):
  return IptablesRule(
      NAT, POSTROUTING,
      ('-m', 'mark', '--mark', MarkValue(route_id), '-j', 'RETURN'),
      False)


def PrimaryRules(vip, route_id, workload_addresses, options):
  """The packet filter objects of a VIP held by this node."""
  rules = [ForwardMarkRule(address, route_id, options)
           for address in workload_addresses]
  rules.append(SnatRule(vip, route_id, options))
  return rules


def SecondaryRules(route_id):
  """The packet filter objects of a VIP held by another node."""
  return [ReturnRule(route_id)]


def PolicyRouteFor(vip, route_id, options):
  return PolicyRoute(
      route_id, RouteTableName(options.route_table_prefix, route_id), vip,
      options.interface)


def GroupByVip(routes):
  """Collapse workload routes into one entry per distinct VIP.

  Args:
    routes: iterable, WorkloadRoute values.

  Returns:
    OrderedDict, VIP strings mapped to (route ID, sorted workload addresses),
    ordered by VIP.
  """
  grouped = {}
  for route in routes:
    route_id, addresses = grouped.setdefault(route.vip, (route.route_id, []))
    if route.workload_address not in addresses:
      addresses.append(route.workload_address)
  return collections.OrderedDict(
      (vip, (route_id, sorted(addresses)))
      for vip, (route_id, addresses) in sorted(grouped.items()))


def ComputeDesiredState(snapshot, oracle, options):
  """Compute the desired kernel state.

  Args:
    snapshot: mappings.MappingSnapshot, the mappings of this cycle.
    oracle: object with IsLocal(address, interface), queried once per VIP.
    options: EgressOptions, the node configuration.

  Returns:
    DesiredState, the objects this node should have in the kernel.
  """
  workload_rules = [WorkloadMarkRule(route, options)
                    for route in snapshot.routes]
  vip_states = []
  for vip, (route_id, addresses) in GroupByVip(snapshot.routes).items():
    if oracle.IsLocal(vip, options.interface):
      vip_states.append(VipState(
          vip, route_id, True, addresses,
          PrimaryRules(vip, route_id, addresses, options), None))
    else:
      vip_states.append(VipState(
          vip, route_id, False, addresses, SecondaryRules(route_id),
          PolicyRouteFor(vip, route_id, options)))
  return DesiredState(
      options.chain, BypassRules(options), HookRule(options), workload_rules,
      vip_states)


def _RemovePolicyRoute(policy_route):
  return [
      Operation(REMOVE_ROUTE_RULE, (policy_route,)),
      Operation(FLUSH_ROUTES, (policy_route,)),
      Operation(REMOVE_ROUTE_TABLE, (policy_route,)),
  ]


def BuildApplyPlan(desired):
  """Order the operations that create the desired state.

  The chain exists before any rule references it and holds the bypass rules
  before the hook rule is appended. Workload marks come next, then the VIP
  objects, and finally the route cache is flushed.

  Args:
    desired: DesiredState, the state to apply.

  Returns:
    list, the Operation values to execute in order.
  """
  plan = [Operation(ENSURE_CHAIN, (MANGLE, desired.chain))]
  plan.extend(Operation(ENSURE_RULE, (rule,)) for rule in desired.bypass_rules)
  plan.append(Operation(ENSURE_RULE, (desired.hook_rule,)))
  plan.extend(
      Operation(ENSURE_RULE, (rule,)) for rule in desired.workload_rules)
  for vip_state in desired.vip_states:
    plan.extend(Operation(ENSURE_RULE, (rule,)) for rule in vip_state.rules)
    if vip_state.policy_route:
      plan.extend([
          Operation(ENSURE_ROUTE_TABLE, (vip_state.policy_route,)),
          Operation(ENSURE_ROUTE, (vip_state.policy_route,)),
          Operation(ENSURE_ROUTE_RULE, (vip_state.policy_route,)),
      ])
  plan.append(Operation(FLUSH_ROUTE_CACHE, ()))
  return plan


def BuildTeardownPlan(snapshots, options, delete_chain=False):
  """Order the operations that remove every object managed for snapshots.

  Both the primary and the secondary objects of each VIP are removed, so the
  plan does not depend on which node holds the VIP. Each object appears once
  even when several snapshots mention it.

  Args:
    snapshots: iterable, mappings.MappingSnapshot values to clean up after.
    options: EgressOptions, the node configuration.
    delete_chain: bool, True to also remove the hook, bypass rules and chain.

  Returns:
    list, the Operation values to execute in order.
  """
  routes = []
  for snapshot in snapshots:
    for route in snapshot.routes:
      if route not in routes:
        routes.append(route)

  plan = []
  for route in sorted(routes):
    plan.append(Operation(REMOVE_RULE, (WorkloadMarkRule(route, options),)))

  vips = collections.OrderedDict()
  for route in sorted(routes):
    key = (route.vip, route.route_id)
    vips.setdefault(key, [])
    if route.workload_address not in vips[key]:
      vips[key].append(route.workload_address)
  for (vip, route_id), addresses in vips.items():
    rules = PrimaryRules(vip, route_id, addresses, options)
    rules.extend(SecondaryRules(route_id))
    plan.extend(Operation(REMOVE_RULE, (rule,)) for rule in rules)
    plan.extend(_RemovePolicyRoute(PolicyRouteFor(vip, route_id, options)))
  plan.append(Operation(FLUSH_ROUTE_CACHE, ()))

  if delete_chain:
    plan.append(Operation(REMOVE_RULE, (HookRule(options),)))
    plan.extend(
        Operation(REMOVE_RULE, (rule,)) for rule in BypassRules(options))
    plan.append(Operation(FLUSH_CHAIN, (MANGLE, options.chain)))
    plan.append(Operation(DELETE_CHAIN, (MANGLE, options.chain)))
  return plan
