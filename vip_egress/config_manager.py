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

"""A library for retrieving configuration settings."""

import configparser
import os

from vip_egress import constants

CONFIG = os.path.join(constants.SYSCONFDIR, 'vip_egress.cfg')


class ConfigManager(object):
  """Process the configuration defaults."""

  def __init__(self, config_file=None, config_defaults=None):
    """Constructor.

    Args:
      config_file: string, the location of the config file.
      config_defaults: dict, section names mapped to dicts of option defaults.
    """
    self.config_file = config_file or CONFIG
    self.config_defaults = config_defaults or {}
    self.config = configparser.ConfigParser(interpolation=None)
    self.config.read(self.config_file)

  def _GetDefault(self, section, option):
    """Look up the built-in default for an option.

    Args:
      section: string, the section of the config file to check.
      option: string, the option to retrieve the default of.

    Returns:
      string, the default value or None if there is no default.
    """
    return self.config_defaults.get(section, {}).get(option)

  def GetOptionString(self, section, option):
    """Get the value of an option in the config file.

    Args:
      section: string, the section of the config file to check.
      option: string, the option to retrieve the value of.

    Returns:
      string, the value of the option, its default, or None.
    """
    if self.config.has_option(section, option):
      return self.config.get(section, option).strip()
    else:
      return self._GetDefault(section, option)

  def GetOptionBool(self, section, option):
    """Get the value of an option in the config file.

    Args:
      section: string, the section of the config file to check.
      option: string, the option to retrieve the value of.

    Returns:
      bool, True if the option is enabled or not set.
    """
    return (not self.config.has_option(section, option) or
            self.config.getboolean(section, option))
