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
PCI passthrough handling through libvirt ``<hostdev>`` devices.
"""

import logging
import threading
import xml.etree.ElementTree as ET

import libvirt

from migfra.drivers import DeviceDriver, PCIId, to_int
from migfra.exceptions import DeviceError

LOG = logging.getLogger(__name__)

HOSTDEV_XML = """<hostdev mode='subsystem' type='pci' managed='yes'>
  <source>
    <address domain='0x%04x' bus='0x%02x' slot='0x%02x' function='0x%x'/>
  </source>
</hostdev>"""


class PCIAddress(object):

    def __init__(self, domain, bus, slot, function):
        self.domain = domain
        self.bus = bus
        self.slot = slot
        self.function = function

    @classmethod
    def from_element(cls, element):
        return cls(*[to_int(element.get(attr, "0"))
                     for attr in ("domain", "bus", "slot", "function")])

    def key(self):
        return (self.domain, self.bus, self.slot, self.function)

    def to_hostdev_xml(self):
        return HOSTDEV_XML % self.key()


class LibvirtPCIDeviceDriver(DeviceDriver):

    """
    Attach and detach PCI passthrough devices of libvirt domains.

    Host devices are looked up through the node device API of the
    connection the domain belongs to, so the same driver serves the source
    and the destination domain of a migration.
    """

    def __init__(self):
        # Serializes the choice of a free host device between threads.
        self._attach_lock = threading.Lock()

    def attach(self, domain, pci_id):
        with self._attach_lock:
            conn = domain.connect()
            address = self._find_free_device(conn, pci_id)
            LOG.debug("Attach device %s at %s to domain %s.",
                      pci_id, address.key(), domain.name())
            try:
                domain.attachDeviceFlags(address.to_hostdev_xml(),
                                         libvirt.VIR_DOMAIN_AFFECT_LIVE)
            except libvirt.libvirtError as e:
                raise DeviceError("attaching device %s" % pci_id, str(e))

    def detach(self, domain):
        """
        Detach all PCI hostdevs of the domain, or none of them.

        When one detach fails, the devices detached before it are attached
        again at their old address before the error is raised.
        """
        detached = []
        for address, pci_id in self._domain_hostdevs(domain):
            LOG.debug("Detach device %s at %s from domain %s.",
                      pci_id, address.key(), domain.name())
            try:
                domain.detachDeviceFlags(address.to_hostdev_xml(),
                                         libvirt.VIR_DOMAIN_AFFECT_LIVE)
            except libvirt.libvirtError as e:
                self._rollback_detach(domain, detached)
                raise DeviceError("detaching device %s" % pci_id, str(e))
            detached.append((address, pci_id))
        return [pci_id for _, pci_id in detached]

    @staticmethod
    def _rollback_detach(domain, detached):
        for address, pci_id in detached:
            try:
                domain.attachDeviceFlags(address.to_hostdev_xml(),
                                         libvirt.VIR_DOMAIN_AFFECT_LIVE)
            except libvirt.libvirtError:
                LOG.error("Cannot reattach device %s at %s to domain %s.",
                          pci_id, address.key(), domain.name(),
                          exc_info=True)

    def _domain_hostdevs(self, domain, host_devices=None):
        """
        :return: List of (PCIAddress, PCIId) of the domain's PCI hostdevs.
        """
        if host_devices is None:
            host_devices = self._host_devices(domain.connect())
        root = ET.fromstring(domain.XMLDesc(0))
        hostdevs = []
        for hostdev in root.findall("./devices/hostdev[@type='pci']"):
            element = hostdev.find("./source/address")
            if element is None:
                continue
            address = PCIAddress.from_element(element)
            pci_id = host_devices.get(address.key())
            if pci_id is None:
                LOG.warning("Skip hostdev %s without matching node device.",
                            address.key())
                continue
            hostdevs.append((address, pci_id))
        return hostdevs

    @staticmethod
    def _host_devices(conn):
        """
        :return: Mapping of PCI address key to PCIId of all host devices.
        """
        devices = {}
        flags = libvirt.VIR_CONNECT_LIST_NODE_DEVICES_CAP_PCI_DEV
        for node_device in conn.listAllDevices(flags):
            capability = ET.fromstring(node_device.XMLDesc(0)).find(
                "./capability[@type='pci']")
            if capability is None:
                continue
            key = tuple(to_int(capability.findtext(tag, "0"))
                        for tag in ("domain", "bus", "slot", "function"))
            vendor = capability.find("vendor").get("id")
            product = capability.find("product").get("id")
            devices[key] = PCIId(to_int(vendor), to_int(product))
        return devices

    def _find_free_device(self, conn, pci_id):
        host_devices = self._host_devices(conn)
        in_use = set()
        for domain in conn.listAllDomains(libvirt.VIR_CONNECT_LIST_DOMAINS_ACTIVE):
            in_use.update(address.key() for address, _ in
                          self._domain_hostdevs(domain, host_devices))
        for key, candidate in sorted(host_devices.items()):
            if candidate == pci_id and key not in in_use:
                return PCIAddress(*key)
        raise DeviceError("attaching device %s" % pci_id,
                          "no free host device available")
