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

"""Converge the kernel egress state to a mapping snapshot.

Every pass starts by tearing down everything managed for the previous and the
current snapshot, so partial state left by a crash, ownership changes and
route IDs dropped from the mappings are all cleaned before the desired state
is applied again.
"""

import logging
import socket

from vip_egress.egress import egress_plan

IDLE = 'idle'
TEARING_DOWN = 'tearing-down'
APPLYING = 'applying'
TERMINATED = 'terminated'


class EgressReconciler(object):
  """Run teardown and apply passes against the kernel."""

  def __init__(self, egress_utils, oracle, options, logger=logging):
    """Constructor.

    Args:
      egress_utils: egress_utils.EgressUtils, runs plan operations.
      oracle: object with IsLocal(address, interface), e.g. NetworkUtils.
      options: egress_plan.EgressOptions, the node configuration.
      logger: logger object, used to write to SysLog and the console.
    """
    self.egress_utils = egress_utils
    self.oracle = oracle
    self.options = options
    self.logger = logger
    self.state = IDLE
    self.applied = None

  def _Snapshots(self, snapshot):
    snapshots = [snapshot]
    if self.applied is not None and self.applied != snapshot:
      snapshots.insert(0, self.applied)
    return snapshots

  def _TearDown(self, snapshot, delete_chain):
    self.state = TEARING_DOWN
    plan = egress_plan.BuildTeardownPlan(
        self._Snapshots(snapshot), self.options, delete_chain=delete_chain)
    self.egress_utils.ExecutePlan(plan)
    self.applied = None

  def _LogTransitions(self, desired):
    hostname = socket.gethostname()
    for vip_state in desired.vip_states:
      if vip_state.primary:
        self.logger.info('VIP %s transitioned to primary.', vip_state.vip)
        self.logger.info(
            'Egress for %s now enabled on node %s.', vip_state.vip, hostname)
      else:
        self.logger.info('VIP %s transitioned to secondary.', vip_state.vip)
        self.logger.info(
            'Egress for %s now disabled on node %s.', vip_state.vip, hostname)

  def Delete(self, snapshot):
    """Remove every managed object, including the classifying chain.

    Args:
      snapshot: mappings.MappingSnapshot, the mappings to clean up after.
    """
    self.logger.info('Deleting egress rules for each VIP and workload.')
    self._TearDown(snapshot, delete_chain=True)
    self.state = TERMINATED

  def Apply(self, snapshot):
    """Tear down and re-apply the egress state for a snapshot.

    Args:
      snapshot: mappings.MappingSnapshot, the mappings to apply.

    Returns:
      egress_plan.DesiredState, the state that was applied.
    """
    for error in snapshot.errors:
      self.logger.warning('Skipping egress mapping. %s', error)

    self._TearDown(snapshot, delete_chain=False)

    self.state = APPLYING
    self.applied = snapshot
    self.logger.info('Applying egress rules for each VIP and workload.')
    desired = egress_plan.ComputeDesiredState(
        snapshot, self.oracle, self.options)
    self.egress_utils.ExecutePlan(egress_plan.BuildApplyPlan(desired))
    self._LogTransitions(desired)
    self.state = IDLE
    return desired

  def Reconcile(self, snapshot, delete=False):
    """Run one reconciliation pass.

    Args:
      snapshot: mappings.MappingSnapshot, the mappings of this cycle.
      delete: bool, True to only remove the managed state.
    """
    if delete:
      self.Delete(snapshot)
    else:
      self.Apply(snapshot)
