#!/usr/bin/python

import os
import shutil
import sys
import tempfile
import unittest
from unittest import mock

# simple magic for using scripts within a source tree
basedir = os.path.dirname(os.path.dirname(os.path.dirname(
    os.path.abspath(__file__))))
if os.path.isdir(os.path.join(basedir, 'migfra')):
    sys.path.append(basedir)

from migfra.core import config

CONFIG = """
[communicator]
host = broker.cluster
task_topic = fast/{hostname}/task

[timeouts]
balloon = 12.5
boot = soon

[cluster]
nodes = node1, node2
    node3
"""


class TestConfig(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "migfra.conf")
        with open(self.path, "w") as f:
            f.write(CONFIG)

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def test_defaults(self):
        conf = config.Config()
        self.assertEqual(conf.get("hypervisor", "uri"), "qemu:///system")
        self.assertEqual(conf.get_int("communicator", "port"), 1883)
        self.assertEqual(conf.get_float("timeouts", "balloon_confirm"), 1.0)
        self.assertEqual(conf.get_list("cluster", "nodes"), [])

    def test_file_overrides(self):
        conf = config.Config(self.path)
        self.assertEqual(conf.get("communicator", "host"), "broker.cluster")
        self.assertEqual(conf.get_int("communicator", "port"), 1883)
        self.assertEqual(conf.get_float("timeouts", "balloon"), 12.5)
        self.assertEqual(conf.get_list("cluster", "nodes"),
                         ["node1", "node2", "node3"])

    def test_missing_file(self):
        self.assertRaises(config.ConfigNotFoundError, config.Config,
                          os.path.join(self.tmpdir, "nope.conf"))

    def test_missing_option(self):
        conf = config.Config()
        with self.assertRaises(config.ConfigNoOptionError) as cm:
            conf.get("hypervisor", "colour")
        self.assertIn("colour", str(cm.exception))

    def test_bad_value(self):
        conf = config.Config(self.path)
        with self.assertRaises(config.ConfigValueError) as cm:
            conf.get_float("timeouts", "boot")
        self.assertIn("soon", str(cm.exception))

    def test_boolean(self):
        conf = config.Config()
        conf.set("extra", "enabled", "yes")
        self.assertTrue(conf.get_boolean("extra", "enabled"))
        conf.set("extra", "enabled", "perhaps")
        self.assertRaises(config.ConfigValueError, conf.get_boolean, "extra",
                          "enabled")

    @mock.patch("migfra.core.config.socket.gethostname",
                return_value="node7.cluster.local")
    def test_topic(self, gethostname):
        conf = config.Config(self.path)
        self.assertEqual(conf.get_topic("task_topic"), "fast/node7/task")
        self.assertEqual(conf.get_topic("result_topic"),
                         "fast/migfra/node7/result")


if __name__ == '__main__':
    unittest.main()
