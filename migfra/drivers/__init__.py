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
Interfaces of the hypervisor and device backends.

Domain and connection handles are opaque to the rest of the framework; only
the driver that produced them knows what they are.
"""

import collections
import importlib

from abc import ABCMeta
from abc import abstractmethod


class DomainState(object):
    SHUT_OFF = "shut off"
    RUNNING = "running"
    PAUSED = "paused"
    OTHER = "other"


MemoryStats = collections.namedtuple("MemoryStats",
                                     ["unused", "available", "actual"])


def to_int(value):
    if isinstance(value, int):
        return value
    return int(str(value), 0)


class PCIId(object):

    """
    A PCI device class identified by its vendor and device id.
    """

    def __init__(self, vendor, device):
        self.vendor = int(vendor)
        self.device = int(device)

    @classmethod
    def from_node(cls, node):
        """
        Build a PCIId from a decoded request entry.

        Accepts ``{vendor: 0x15b3, device: 0x1004}`` and ``"15b3:1004"``.
        """
        if isinstance(node, dict):
            return cls(to_int(node["vendor"]), to_int(node["device"]))
        vendor, device = str(node).split(":")
        return cls(int(vendor, 16), int(device, 16))

    def emit(self):
        return {"vendor": self.vendor, "device": self.device}

    def __eq__(self, other):
        if not isinstance(other, PCIId):
            return NotImplemented
        return (self.vendor, self.device) == (other.vendor, other.device)

    def __hash__(self):
        return hash((self.vendor, self.device))

    def __str__(self):
        return "%04x:%04x" % (self.vendor, self.device)

    __repr__ = __str__


class HypervisorDriver(metaclass=ABCMeta):

    """
    Domain lifecycle and configuration primitives.

    Every method raises :class:`migfra.exceptions.BackendError` (or one of
    its subclasses) carrying the native error message on failure.
    """

    @abstractmethod
    def find_domain(self, name, conn=None):
        """
        :param conn: Connection to look in, the local host when None.
        :raises DomainNotFoundError: No domain with this name exists.
        """
        raise NotImplementedError

    @abstractmethod
    def define_domain(self, xml):
        raise NotImplementedError

    @abstractmethod
    def domain_name(self, domain):
        raise NotImplementedError

    @abstractmethod
    def domain_state(self, domain):
        """
        :return: One of the :class:`DomainState` values.
        """
        raise NotImplementedError

    @abstractmethod
    def max_memory(self, domain):
        """
        :return: The maximum memory of the domain in KiB.
        """
        raise NotImplementedError

    @abstractmethod
    def set_memory(self, domain, value, maximum=False):
        """Set the (maximum) memory in KiB in the persistent config."""
        raise NotImplementedError

    @abstractmethod
    def set_vcpus(self, domain, value, maximum=False):
        """Set the (maximum) number of vcpus in the persistent config."""
        raise NotImplementedError

    @abstractmethod
    def set_memory_stats_period(self, domain, period):
        raise NotImplementedError

    @abstractmethod
    def create(self, domain):
        raise NotImplementedError

    @abstractmethod
    def destroy(self, domain):
        raise NotImplementedError

    @abstractmethod
    def shutdown(self, domain):
        raise NotImplementedError

    @abstractmethod
    def connect(self, host, driver, transport, read_only=False):
        """
        Open a connection to the hypervisor of another host.

        :return: Connection handle, to be released with :meth:`disconnect`.
        """
        raise NotImplementedError

    @abstractmethod
    def disconnect(self, conn):
        raise NotImplementedError

    @abstractmethod
    def migrate(self, domain, conn, live=True, migrate_uri=None):
        """
        Migrate a running domain to the host behind ``conn``.

        :param live: Keep the guest running during the transfer.
        :param migrate_uri: Driver specific data transport URI, the default
                            transport is used when None.
        :return: Handle of the domain on the destination.
        :raises MigrationError: The migration failed, the domain is still
                                on the source.
        """
        raise NotImplementedError

    @abstractmethod
    def balloon_stats(self, domain):
        """
        :return: :class:`MemoryStats` in KiB.
        """
        raise NotImplementedError

    @abstractmethod
    def set_balloon(self, domain, value):
        """Request a new balloon size in KiB for the running domain."""
        raise NotImplementedError

    @abstractmethod
    def subscribe_balloon_change(self, domain, callback):
        """
        Call ``callback(actual)`` whenever the balloon of ``domain`` changes.

        :return: Handle for :meth:`unsubscribe`.
        """
        raise NotImplementedError

    @abstractmethod
    def unsubscribe(self, handle):
        raise NotImplementedError

    def close(self):
        pass


class DeviceDriver(metaclass=ABCMeta):

    @abstractmethod
    def attach(self, domain, pci_id):
        raise NotImplementedError

    @abstractmethod
    def detach(self, domain):
        """
        Detach all passthrough devices of the domain.

        :return: List of the detached :class:`PCIId` in domain order.
        """
        raise NotImplementedError


_HYPERVISOR_DRIVERS = {
    "libvirt": ("migfra.drivers.libvirt_driver", "LibvirtDriver"),
}

_DEVICE_DRIVERS = {
    "libvirt": ("migfra.drivers.pci", "LibvirtPCIDeviceDriver"),
}


def _load(drivers, kind):
    if kind not in drivers:
        raise OSError("Unsupported the %s driver" % kind)
    module_name, class_name = drivers[kind]
    return getattr(importlib.import_module(module_name), class_name)


def get_hypervisor_driver(kind, *args, **kwargs):
    """
    Gets a specific hypervisor driver.

    :param kind: The type of driver to get ('libvirt').
    :return: An instance of the requested driver.
    :raises OSError: If the requested driver is not supported.
    """
    return _load(_HYPERVISOR_DRIVERS, kind)(*args, **kwargs)


def get_device_driver(kind, *args, **kwargs):
    return _load(_DEVICE_DRIVERS, kind)(*args, **kwargs)
