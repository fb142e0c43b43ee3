#!/usr/bin/python

import os
import sys
import unittest

# simple magic for using scripts within a source tree
basedir = os.path.dirname(os.path.dirname(os.path.dirname(
    os.path.abspath(__file__))))
if os.path.isdir(os.path.join(basedir, 'migfra')):
    sys.path.append(basedir)

from migfra import drivers


class TestPCIId(unittest.TestCase):

    def test_from_mapping(self):
        pci_id = drivers.PCIId.from_node({"vendor": "0x15b3", "device": 4100})
        self.assertEqual(pci_id, drivers.PCIId(0x15b3, 0x1004))
        self.assertEqual(str(pci_id), "15b3:1004")

    def test_from_string(self):
        self.assertEqual(drivers.PCIId.from_node("8086:10ED"),
                         drivers.PCIId(0x8086, 0x10ed))

    def test_invalid(self):
        self.assertRaises(ValueError, drivers.PCIId.from_node, "8086")
        self.assertRaises(KeyError, drivers.PCIId.from_node, {"vendor": 1})

    def test_emit(self):
        self.assertEqual(drivers.PCIId(1, 2).emit(), {"vendor": 1, "device": 2})

    def test_hashable(self):
        ids = set([drivers.PCIId(1, 2), drivers.PCIId(1, 2),
                   drivers.PCIId(2, 1)])
        self.assertEqual(len(ids), 2)


class TestFactories(unittest.TestCase):

    def test_unsupported(self):
        with self.assertRaises(OSError) as cm:
            drivers.get_hypervisor_driver("xen")
        self.assertIn("xen", str(cm.exception))
        self.assertRaises(OSError, drivers.get_device_driver, "vfio")

    def test_abstract(self):
        self.assertRaises(TypeError, drivers.HypervisorDriver)
        self.assertRaises(TypeError, drivers.DeviceDriver)


if __name__ == '__main__':
    unittest.main()
