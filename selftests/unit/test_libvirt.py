#!/usr/bin/python

import os
import sys
import unittest
import xml.etree.ElementTree as ET
from unittest import mock

# simple magic for using scripts within a source tree
basedir = os.path.dirname(os.path.dirname(os.path.dirname(
    os.path.abspath(__file__))))
if os.path.isdir(os.path.join(basedir, 'migfra')):
    sys.path.append(basedir)

from migfra.drivers import DomainState, MemoryStats, PCIId
from migfra.exceptions import (BackendError, DeviceError, DomainNotFoundError,
                               MigrationError)
from migfra.guards.devices import MigrateDevicesGuard


class libvirtError(Exception):

    def __init__(self, msg, code=1):
        Exception.__init__(self, msg)
        self.code = code

    def get_error_code(self):
        return self.code


def fake_libvirt():
    libvirt = mock.MagicMock(name="libvirt")
    libvirt.libvirtError = libvirtError
    libvirt.VIR_DOMAIN_RUNNING = 1
    libvirt.VIR_DOMAIN_PAUSED = 3
    libvirt.VIR_DOMAIN_SHUTOFF = 5
    libvirt.VIR_ERR_NO_DOMAIN = 42
    libvirt.VIR_DOMAIN_AFFECT_LIVE = 1
    libvirt.VIR_DOMAIN_AFFECT_CONFIG = 2
    libvirt.VIR_DOMAIN_MEM_MAXIMUM = 4
    libvirt.VIR_DOMAIN_VCPU_MAXIMUM = 4
    libvirt.VIR_MIGRATE_LIVE = 1
    libvirt.VIR_CONNECT_LIST_DOMAINS_ACTIVE = 1
    libvirt.VIR_CONNECT_LIST_NODE_DEVICES_CAP_PCI_DEV = 2
    libvirt.VIR_DOMAIN_EVENT_ID_BALLOON_CHANGE = 13
    return libvirt


# The backends are imported against a stand-in, the bindings need a running
# hypervisor.
with mock.patch.dict(sys.modules, {"libvirt": fake_libvirt()}):
    from migfra.drivers import libvirt_driver, pci

MLX = PCIId(0x15b3, 0x1004)

DOMAIN_XML = """<domain type='kvm'>
  <name>%s</name>
  <devices>
    <disk type='file' device='disk'/>
%s
  </devices>
</domain>"""

HOSTDEV = """    <hostdev mode='subsystem' type='pci' managed='yes'>
      <source>
        <address domain='0x0000' bus='0x%02x' slot='0x00' function='0x0'/>
      </source>
    </hostdev>"""

NODE_DEVICE_XML = """<device>
  <name>pci_0000_%02x_00_0</name>
  <capability type='pci'>
    <domain>0</domain>
    <bus>%d</bus>
    <slot>0</slot>
    <function>0</function>
    <product id='0x1004'/>
    <vendor id='0x15b3'/>
  </capability>
</device>"""


def domain_xml(name, buses):
    return DOMAIN_XML % (name, "\n".join(HOSTDEV % bus for bus in buses))


def node_device(bus):
    device = mock.Mock()
    device.XMLDesc.return_value = NODE_DEVICE_XML % (bus, bus)
    return device


def address_of(hostdev_xml):
    address = ET.fromstring(hostdev_xml).find("./source/address")
    return int(address.get("bus"), 16)


class LibvirtTestCase(unittest.TestCase):

    def setUp(self):
        self.libvirt = fake_libvirt()
        for module in (libvirt_driver, pci):
            patcher = mock.patch.object(module, "libvirt", self.libvirt)
            patcher.start()
            self.addCleanup(patcher.stop)


class TestLibvirtDriver(LibvirtTestCase):

    def setUp(self):
        super(TestLibvirtDriver, self).setUp()
        patcher = mock.patch.object(libvirt_driver, "start_event_loop")
        patcher.start()
        self.addCleanup(patcher.stop)
        self.conn = self.libvirt.open.return_value
        self.driver = libvirt_driver.LibvirtDriver()
        self.domain = mock.Mock()
        self.domain.name.return_value = "vm1"

    def test_open(self):
        self.libvirt.open.assert_called_once_with("qemu:///system")

    def test_open_error(self):
        self.libvirt.open.side_effect = libvirtError("no hypervisor")
        self.assertRaises(BackendError, libvirt_driver.LibvirtDriver)

    def test_find_domain(self):
        self.conn.lookupByName.return_value = self.domain
        self.assertIs(self.driver.find_domain("vm1"), self.domain)
        remote = mock.Mock()
        self.driver.find_domain("vm1", remote)
        remote.lookupByName.assert_called_once_with("vm1")

    def test_find_domain_missing(self):
        self.conn.lookupByName.side_effect = libvirtError("no domain", 42)
        self.assertRaises(DomainNotFoundError, self.driver.find_domain, "vm1")
        self.conn.lookupByName.side_effect = libvirtError("denied", 38)
        self.assertRaises(BackendError, self.driver.find_domain, "vm1")

    def test_domain_state(self):
        self.domain.state.return_value = [1, 1]
        self.assertEqual(self.driver.domain_state(self.domain),
                         DomainState.RUNNING)
        self.domain.state.return_value = [5, 1]
        self.assertEqual(self.driver.domain_state(self.domain),
                         DomainState.SHUT_OFF)
        self.domain.state.return_value = [7, 0]
        self.assertEqual(self.driver.domain_state(self.domain),
                         DomainState.OTHER)

    def test_set_memory_and_vcpus(self):
        self.driver.set_memory(self.domain, 2097152, maximum=True)
        self.driver.set_memory(self.domain, 1048576)
        self.driver.set_vcpus(self.domain, 4, maximum=True)
        self.assertEqual(self.domain.setMemoryFlags.call_args_list,
                         [mock.call(2097152, 6), mock.call(1048576, 2)])
        self.domain.setVcpusFlags.assert_called_once_with(4, 6)

    def test_set_memory_error(self):
        self.domain.setMemoryFlags.side_effect = libvirtError("too large")
        with self.assertRaises(BackendError) as cm:
            self.driver.set_memory(self.domain, 1 << 40)
        self.assertIn("too large", str(cm.exception))
        self.assertIn("vm1", str(cm.exception))

    def test_connect(self):
        self.driver.connect("node2", "qemu", "ssh")
        self.libvirt.open.assert_called_with("qemu+ssh://node2/system")
        self.driver.connect("node3", "qemu", "tcp", read_only=True)
        self.libvirt.openReadOnly.assert_called_once_with(
            "qemu+tcp://node3/system")

    def test_connect_error(self):
        self.libvirt.open.side_effect = libvirtError("unreachable")
        self.assertRaises(BackendError, self.driver.connect, "node2", "qemu",
                          "ssh")

    def test_migrate_live(self):
        dest_conn = mock.Mock()
        dest_domain = mock.Mock()
        self.domain.migrate.return_value = dest_domain
        result = self.driver.migrate(self.domain, dest_conn, True,
                                     "rdma://node2-ib")
        self.assertIs(result, dest_domain)
        self.domain.migrate.assert_called_once_with(dest_conn, 1, None,
                                                    "rdma://node2-ib", 0)

    def test_migrate_offline(self):
        dest_conn = mock.Mock()
        self.driver.migrate(self.domain, dest_conn, False)
        self.domain.migrate.assert_called_once_with(dest_conn, 0, None, None,
                                                    0)

    def test_migrate_error(self):
        self.domain.migrate.side_effect = libvirtError("port in use")
        with self.assertRaises(MigrationError) as cm:
            self.driver.migrate(self.domain, mock.Mock())
        self.assertIn("port in use", str(cm.exception))

    def test_migrate_without_destination_domain(self):
        self.domain.migrate.return_value = None
        self.libvirt.virGetLastErrorMessage.return_value = "lost connection"
        with self.assertRaises(MigrationError) as cm:
            self.driver.migrate(self.domain, mock.Mock())
        self.assertIn("lost connection", str(cm.exception))

    def test_balloon_stats(self):
        self.domain.memoryStats.return_value = {
            "actual": 4194304, "unused": 3145728, "available": 4030000,
            "rss": 1200000}
        self.assertEqual(self.driver.balloon_stats(self.domain),
                         MemoryStats(3145728, 4030000, 4194304))

    def test_balloon_stats_missing(self):
        self.domain.memoryStats.return_value = {"actual": 4194304}
        with self.assertRaises(BackendError) as cm:
            self.driver.balloon_stats(self.domain)
        self.assertIn("unused", str(cm.exception))

    def test_set_balloon(self):
        self.driver.set_balloon(self.domain, 1048576)
        self.domain.setMemoryFlags.assert_called_once_with(1048576, 1)

    def test_balloon_subscription(self):
        conn = self.domain.connect.return_value
        conn.domainEventRegisterAny.return_value = 7
        values = []
        handle = self.driver.subscribe_balloon_change(self.domain,
                                                      values.append)
        args = conn.domainEventRegisterAny.call_args[0]
        self.assertEqual(args[:2], (self.domain, 13))
        args[2](conn, self.domain, 2097152, None)
        self.assertEqual(values, [2097152])
        self.driver.unsubscribe(handle)
        conn.domainEventDeregisterAny.assert_called_once_with(7)

    def test_close(self):
        self.conn.close.return_value = 0
        self.driver.close()
        self.conn.close.assert_called_once_with()


class TestLibvirtPCIDeviceDriver(LibvirtTestCase):

    def setUp(self):
        super(TestLibvirtPCIDeviceDriver, self).setUp()
        self.driver = pci.LibvirtPCIDeviceDriver()
        self.conn = mock.Mock()
        self.conn.listAllDevices.return_value = [node_device(bus)
                                                 for bus in (3, 4, 5)]
        self.domain = self._domain("vm1", (3, 4))

    def _domain(self, name, buses):
        domain = mock.Mock()
        domain.name.return_value = name
        domain.connect.return_value = self.conn
        domain.XMLDesc.return_value = domain_xml(name, buses)
        return domain

    def test_hostdev_xml(self):
        address = pci.PCIAddress(0, 0x81, 0x1f, 7)
        element = ET.fromstring(address.to_hostdev_xml())
        self.assertEqual(element.get("type"), "pci")
        self.assertEqual(element.get("managed"), "yes")
        parsed = pci.PCIAddress.from_element(element.find("./source/address"))
        self.assertEqual(parsed.key(), (0, 0x81, 0x1f, 7))

    def test_detach(self):
        self.assertEqual(self.driver.detach(self.domain), [MLX, MLX])
        buses = [address_of(call[0][0]) for call in
                 self.domain.detachDeviceFlags.call_args_list]
        self.assertEqual(buses, [3, 4])
        self.assertEqual(self.domain.detachDeviceFlags.call_args[0][1], 1)

    def test_detach_skips_unknown_hostdev(self):
        self.conn.listAllDevices.return_value = [node_device(4)]
        self.assertEqual(self.driver.detach(self.domain), [MLX])
        self.assertEqual(self.domain.detachDeviceFlags.call_count, 1)

    def test_detach_failure_reattaches_detached(self):
        self.domain.detachDeviceFlags.side_effect = [None,
                                                     libvirtError("busy")]
        with self.assertRaises(DeviceError) as cm:
            self.driver.detach(self.domain)
        self.assertIn("busy", str(cm.exception))
        self.assertEqual(self.domain.attachDeviceFlags.call_count, 1)
        xml, flags = self.domain.attachDeviceFlags.call_args[0]
        self.assertEqual(address_of(xml), 3)
        self.assertEqual(flags, 1)

    def test_guard_keeps_devices_on_detach_failure(self):
        self.domain.detachDeviceFlags.side_effect = [None,
                                                     libvirtError("busy")]
        guard = MigrateDevicesGuard(self.driver, self.domain)
        with self.assertRaises(DeviceError):
            with guard:
                self.fail("guard entered despite failed detach")
        self.assertEqual(self.domain.detachDeviceFlags.call_count, 2)
        self.assertEqual(self.domain.attachDeviceFlags.call_count, 1)

    def test_attach_free_device(self):
        self.conn.listAllDomains.return_value = [self._domain("vm2", (3,))]
        self.driver.attach(self.domain, MLX)
        xml, flags = self.domain.attachDeviceFlags.call_args[0]
        self.assertEqual(address_of(xml), 4)
        self.assertEqual(flags, 1)
        self.conn.listAllDomains.assert_called_once_with(1)

    def test_attach_no_free_device(self):
        self.conn.listAllDomains.return_value = [
            self._domain("vm2", (3, 4)), self._domain("vm3", (5,))]
        self.assertRaises(DeviceError, self.driver.attach, self.domain, MLX)
        self.domain.attachDeviceFlags.assert_not_called()

    def test_attach_other_device_class(self):
        self.conn.listAllDomains.return_value = []
        self.assertRaises(DeviceError, self.driver.attach, self.domain,
                          PCIId(0x8086, 0x10ed))

    def test_attach_error(self):
        self.conn.listAllDomains.return_value = []
        self.domain.attachDeviceFlags.side_effect = libvirtError("in use")
        with self.assertRaises(DeviceError) as cm:
            self.driver.attach(self.domain, MLX)
        self.assertIn("in use", str(cm.exception))


if __name__ == '__main__':
    unittest.main()
