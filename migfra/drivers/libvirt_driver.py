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
Hypervisor driver on top of the libvirt python bindings.
"""

import logging
import threading

import libvirt

from migfra.drivers import DomainState, HypervisorDriver, MemoryStats
from migfra.exceptions import (BackendError, DomainNotFoundError,
                               MigrationError)

LOG = logging.getLogger(__name__)

_STATES = {
    libvirt.VIR_DOMAIN_SHUTOFF: DomainState.SHUT_OFF,
    libvirt.VIR_DOMAIN_RUNNING: DomainState.RUNNING,
    libvirt.VIR_DOMAIN_PAUSED: DomainState.PAUSED,
}

_event_loop_lock = threading.Lock()
_event_loop_thread = None


def _run_event_loop():
    while True:
        if libvirt.virEventRunDefaultImpl() < 0:
            LOG.error("Failed to run event loop: %s",
                      libvirt.virGetLastErrorMessage())


def start_event_loop():
    """
    Register libvirt's default event implementation and run it in a daemon
    thread. Must happen before the first connection is opened; only the
    first call has an effect.
    """
    global _event_loop_thread
    with _event_loop_lock:
        if _event_loop_thread is not None:
            return
        if libvirt.virEventRegisterDefaultImpl() < 0:
            raise BackendError("registering event implementation",
                               libvirt.virGetLastErrorMessage())
        _event_loop_thread = threading.Thread(target=_run_event_loop,
                                              name="libvirt-event-loop")
        _event_loop_thread.daemon = True
        _event_loop_thread.start()
        LOG.debug("Libvirt event loop started.")


class LibvirtDriver(HypervisorDriver):

    """
    :param uri: URI of the local hypervisor.
    """

    def __init__(self, uri="qemu:///system"):
        start_event_loop()
        self.uri = uri
        try:
            self._conn = libvirt.open(uri)
        except libvirt.libvirtError as e:
            raise BackendError("connecting to %s" % uri, str(e))
        LOG.info("Connected to %s.", uri)

    def find_domain(self, name, conn=None):
        conn = conn or self._conn
        try:
            return conn.lookupByName(name)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                raise DomainNotFoundError(name)
            raise BackendError("looking up domain %s" % name, str(e))

    def define_domain(self, xml):
        try:
            return self._conn.defineXML(xml)
        except libvirt.libvirtError as e:
            raise BackendError("defining domain", str(e))

    def domain_name(self, domain):
        return domain.name()

    def domain_state(self, domain):
        try:
            state = domain.state()[0]
        except libvirt.libvirtError as e:
            raise BackendError("getting domain state", str(e))
        return _STATES.get(state, DomainState.OTHER)

    def max_memory(self, domain):
        try:
            return domain.maxMemory()
        except libvirt.libvirtError as e:
            raise BackendError("getting maximum memory", str(e))

    def set_memory(self, domain, value, maximum=False):
        flags = libvirt.VIR_DOMAIN_AFFECT_CONFIG
        if maximum:
            flags |= libvirt.VIR_DOMAIN_MEM_MAXIMUM
        try:
            domain.setMemoryFlags(value, flags)
        except libvirt.libvirtError as e:
            raise BackendError("setting %samount of memory to %s KiB for "
                               "domain %s" % ("maximum " if maximum else "",
                                              value, domain.name()), str(e))

    def set_vcpus(self, domain, value, maximum=False):
        flags = libvirt.VIR_DOMAIN_AFFECT_CONFIG
        if maximum:
            flags |= libvirt.VIR_DOMAIN_VCPU_MAXIMUM
        try:
            domain.setVcpusFlags(value, flags)
        except libvirt.libvirtError as e:
            raise BackendError("setting %snumber of vcpus to %s for domain %s"
                               % ("maximum " if maximum else "", value,
                                  domain.name()), str(e))

    def set_memory_stats_period(self, domain, period):
        try:
            domain.setMemoryStatsPeriod(period, libvirt.VIR_DOMAIN_AFFECT_CONFIG)
        except libvirt.libvirtError as e:
            raise BackendError("setting memory stats period to %s for domain %s"
                               % (period, domain.name()), str(e))

    def create(self, domain):
        try:
            domain.create()
        except libvirt.libvirtError as e:
            raise BackendError("creating domain", str(e))

    def destroy(self, domain):
        try:
            domain.destroy()
        except libvirt.libvirtError as e:
            raise BackendError("destroying domain", str(e))

    def shutdown(self, domain):
        try:
            domain.shutdown()
        except libvirt.libvirtError as e:
            raise BackendError("shutting down domain", str(e))

    def connect(self, host, driver, transport, read_only=False):
        uri = "%s+%s://%s/system" % (driver, transport, host)
        LOG.debug("Connect to %s%s.", uri, " (read only)" if read_only else "")
        try:
            if read_only:
                return libvirt.openReadOnly(uri)
            return libvirt.open(uri)
        except libvirt.libvirtError as e:
            raise BackendError("connecting to %s" % host, str(e))

    def disconnect(self, conn):
        try:
            conn.close()
        except libvirt.libvirtError as e:
            LOG.warning("Closing connection failed: %s", e)

    def migrate(self, domain, conn, live=True, migrate_uri=None):
        flags = libvirt.VIR_MIGRATE_LIVE if live else 0
        try:
            dest_domain = domain.migrate(conn, flags, None, migrate_uri, 0)
        except libvirt.libvirtError as e:
            raise MigrationError(str(e))
        if dest_domain is None:
            raise MigrationError(libvirt.virGetLastErrorMessage())
        return dest_domain

    def balloon_stats(self, domain):
        try:
            stats = domain.memoryStats()
        except libvirt.libvirtError as e:
            raise BackendError("getting memory stats", str(e))
        try:
            return MemoryStats(stats["unused"], stats["available"],
                               stats["actual"])
        except KeyError as e:
            raise BackendError("getting memory stats",
                               "guest does not report %s" % e)

    def set_balloon(self, domain, value):
        try:
            domain.setMemoryFlags(value, libvirt.VIR_DOMAIN_AFFECT_LIVE)
        except libvirt.libvirtError as e:
            raise BackendError("setting amount of memory to %s KiB" % value,
                               str(e))

    def subscribe_balloon_change(self, domain, callback):
        def _on_balloon_change(conn, dom, actual, opaque):
            callback(actual)

        # Events of a migrated domain arrive on the destination connection.
        conn = domain.connect()
        try:
            callback_id = conn.domainEventRegisterAny(
                domain, libvirt.VIR_DOMAIN_EVENT_ID_BALLOON_CHANGE,
                _on_balloon_change, None)
        except libvirt.libvirtError as e:
            raise BackendError("registering balloon change callback", str(e))
        return conn, callback_id

    def unsubscribe(self, handle):
        conn, callback_id = handle
        try:
            conn.domainEventDeregisterAny(callback_id)
        except libvirt.libvirtError as e:
            raise BackendError("deregistering event callback", str(e))

    def close(self):
        try:
            if self._conn.close():
                LOG.warning("Some connections have not been closed after "
                            "closing the hypervisor driver.")
        except libvirt.libvirtError as e:
            LOG.warning("Closing connection to %s failed: %s", self.uri, e)
