#!/usr/bin/python

import logging
import os
import shutil
import sys
import tempfile
import time
import unittest
from unittest import mock

# simple magic for using scripts within a source tree
basedir = os.path.dirname(os.path.dirname(os.path.dirname(
    os.path.abspath(__file__))))
if os.path.isdir(os.path.join(basedir, 'migfra')):
    sys.path.append(basedir)

from migfra.core import data_dir, logger
from migfra.time_measurement import TimeMeasurement


class TestDataDir(unittest.TestCase):

    def test_default(self):
        with mock.patch.dict(os.environ):
            os.environ.pop("MIGFRA_DATA_DIR", None)
            self.assertEqual(data_dir.get_data_dir(),
                             os.path.join(data_dir.get_root_dir(), "data"))

    def test_environment(self):
        with mock.patch.dict(os.environ, {"MIGFRA_DATA_DIR": "/srv/migfra"}):
            self.assertEqual(data_dir.get_log_filename(),
                             "/srv/migfra/log/migfra.log")


class TestLogger(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        log = logging.getLogger("migfra")
        for handler in list(log.handlers):
            handler.close()
            log.removeHandler(handler)
        log.setLevel(logging.NOTSET)
        shutil.rmtree(self.tmpdir)

    def test_init_logger(self):
        log_file = os.path.join(self.tmpdir, "migfra.log")
        log = logger.init_logger("debug", log_file)
        self.assertEqual(log.level, logging.DEBUG)
        self.assertEqual(len(log.handlers), 2)
        logging.getLogger("migfra.vmm").debug("Migrate %s.", "vm1")
        for handler in log.handlers:
            handler.flush()
        with open(log_file) as f:
            self.assertIn("migfra.vmm", f.read())

    def test_reinit(self):
        log_file = os.path.join(self.tmpdir, "migfra.log")
        logger.init_logger(logging.INFO, log_file)
        log = logger.init_logger(logging.WARNING, log_file)
        self.assertEqual(len(log.handlers), 2)


class TestTimeMeasurement(unittest.TestCase):

    def test_disabled(self):
        measurement = TimeMeasurement()
        with measurement.measure("migrate"):
            pass
        self.assertEqual(measurement.emit(), {})

    def test_measure(self):
        measurement = TimeMeasurement(True)
        with measurement.measure("migrate"):
            time.sleep(0.01)
        durations = measurement.emit()
        self.assertGreater(durations["migrate"], 0)

    def test_tock_without_tick(self):
        measurement = TimeMeasurement(True)
        measurement.tock("nothing")
        self.assertEqual(measurement.emit(), {})

    def test_measured_on_error(self):
        measurement = TimeMeasurement(True)
        with self.assertRaises(RuntimeError):
            with measurement.measure("stop"):
                raise RuntimeError()
        self.assertIn("stop", measurement.emit())


if __name__ == '__main__':
    unittest.main()
