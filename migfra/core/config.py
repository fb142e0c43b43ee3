# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 2 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.
#
# See LICENSE for more details.
#
# Copyright: migfra contributors 2026

"""
Daemon configuration.

Example config file migfra.conf::

    [communicator]
    host = broker.cluster
    task_topic = fast/migfra/{hostname}/task

    [timeouts]
    balloon = 120

    [cluster]
    nodes = node1, node2, node3

Options missing in the file take the built-in defaults of :data:`DEFAULTS`.
"""

import configparser
import logging
import os
import socket

LOG = logging.getLogger(__name__)

DEFAULTS = {
    "communicator": {
        "host": "localhost",
        "port": "1883",
        "keepalive": "60",
        "qos": "2",
        "task_topic": "fast/migfra/{hostname}/task",
        "result_topic": "fast/migfra/{hostname}/result",
        "pscom_topic_prefix": "fast/pscom/",
    },
    "hypervisor": {
        "uri": "qemu:///system",
        "driver": "qemu",
        "transport": "ssh",
        "memory_stats_period": "1",
        "rdma_suffix": "-ib",
    },
    "timeouts": {
        "balloon": "60",
        "balloon_confirm": "1.0",
        "barrier": "60",
        "boot": "120",
        "shutdown": "120",
    },
    "cluster": {
        "nodes": "",
    },
    "start": {
        "readiness_probe": "ping",
    },
}


class ConfigError(Exception):

    def __init__(self, msg):
        self.msg = msg

    def __str__(self):
        return self.msg


class ConfigNotFoundError(ConfigError):

    def __init__(self, path):
        self.path = path

    def __str__(self):
        return "Config file %s does not exist." % self.path


class ConfigNoOptionError(ConfigError):

    def __init__(self, section, option, path):
        self.section = section
        self.option = option
        self.path = path

    def __str__(self):
        return "There's no option %s in section [%s] of config file %s." % (
            self.option, self.section, self.path)


class ConfigValueError(ConfigError):

    def __init__(self, section, option, value, expected):
        self.section = section
        self.option = option
        self.value = value
        self.expected = expected

    def __str__(self):
        return "Option %s in section [%s] must be %s, got '%s'." % (
            self.option, self.section, self.expected, self.value)


def short_hostname():
    return socket.gethostname().split(".")[0]


class Config(object):

    """
    Wrapper of configparser providing typed access with defaults.

    :param path: Path of the config file, only the defaults are used if
                 None.
    """

    def __init__(self, path=None):
        self.path = path or "<defaults>"
        self.parser = configparser.ConfigParser()
        self.parser.read_dict(DEFAULTS)
        if path is not None:
            if not os.path.isfile(path):
                raise ConfigNotFoundError(path)
            try:
                self.parser.read(path)
            except configparser.Error as e:
                raise ConfigError("Cannot parse %s: %s" % (path, e))
            LOG.debug("Loaded config file %s.", path)

    def get(self, section, option):
        try:
            return self.parser.get(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError):
            raise ConfigNoOptionError(section, option, self.path)

    def _convert(self, section, option, func, expected):
        value = self.get(section, option)
        try:
            return func(value)
        except ValueError:
            raise ConfigValueError(section, option, value, expected)

    def get_int(self, section, option):
        return self._convert(section, option, int, "an integer")

    def get_float(self, section, option):
        return self._convert(section, option, float, "a number")

    def get_boolean(self, section, option):
        def _to_bool(value):
            try:
                return self.parser.BOOLEAN_STATES[value.lower()]
            except KeyError:
                raise ValueError(value)
        return self._convert(section, option, _to_bool, "a boolean")

    def get_list(self, section, option):
        """Comma or whitespace separated values, empty items dropped."""
        value = self.get(section, option)
        return [item for item in value.replace(",", " ").split() if item]

    def get_topic(self, option):
        """
        Topic of the [communicator] section with ``{hostname}`` replaced by
        the short host name.
        """
        return self.get("communicator", option).format(
            hostname=short_hostname())

    def set(self, section, option, value):
        if not self.parser.has_section(section):
            self.parser.add_section(section)
        self.parser.set(section, option, str(value))
