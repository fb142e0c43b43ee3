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
Start, stop and migrate the virtual machines of the local host.
"""

import contextlib
import logging

from avocado.utils import process
from avocado.utils.wait import wait_for

from migfra.core.config import Config, short_hostname
from migfra.drivers import DomainState
from migfra.exceptions import (BackendError, DomainNotFoundError,
                               DomainNotRunningError, DomainStateTimeoutError,
                               MalformedRequestError, RemoteConflictError,
                               WrongDomainStateError)
from migfra.guards.ballooning import MemoryBallooningGuard
from migfra.guards.devices import MigrateDevicesGuard
from migfra.guards.pscom import SuspendPscom
from migfra.time_measurement import TimeMeasurement

LOG = logging.getLogger(__name__)

READINESS_PROBES = ("ping", "none")


class VirtualMachinesManager(object):

    """
    Manage the virtual machines of the local host.

    The driver handles may be shared by concurrently running operations.

    :param driver: The :class:`migfra.drivers.HypervisorDriver` in use.
    :param device_driver: The :class:`migfra.drivers.DeviceDriver` in use.
    :param comm: The :class:`migfra.communicator.Communicator` used for the
                 pscom suspend barrier.
    :param config: The :class:`migfra.core.config.Config`, built-in defaults
                   if None.
    """

    def __init__(self, driver, device_driver, comm=None, config=None,
                 hostname=None):
        config = config or Config()
        self.driver = driver
        self.device_driver = device_driver
        self.comm = comm
        self.hostname = hostname or short_hostname()

        self.driver_name = config.get("hypervisor", "driver")
        self.transport = config.get("hypervisor", "transport")
        self.memory_stats_period = config.get_int("hypervisor",
                                                  "memory_stats_period")
        self.rdma_suffix = config.get("hypervisor", "rdma_suffix")
        self.balloon_timeout = config.get_float("timeouts", "balloon")
        self.balloon_confirm_timeout = config.get_float("timeouts",
                                                        "balloon_confirm")
        self.barrier_timeout = config.get_float("timeouts", "barrier")
        self.boot_timeout = config.get_float("timeouts", "boot")
        self.shutdown_timeout = config.get_float("timeouts", "shutdown")
        self.cluster_nodes = config.get_list("cluster", "nodes")
        self.pscom_topic_prefix = config.get("communicator",
                                             "pscom_topic_prefix")
        self.qos = config.get_int("communicator", "qos")
        self.readiness_probe = config.get("start", "readiness_probe")
        if self.readiness_probe not in READINESS_PROBES:
            raise ValueError("Unsupported readiness probe '%s', choose one of "
                             "%s" % (self.readiness_probe,
                                     ", ".join(READINESS_PROBES)))

    def _find_in_state(self, vm_name, state):
        domain = self.driver.find_domain(vm_name)
        current = self.driver.domain_state(domain)
        if current != state:
            if state == DomainState.RUNNING:
                raise DomainNotRunningError(vm_name, current)
            raise WrongDomainStateError(vm_name, current, state)
        return domain

    def start_instance(self, vm_name=None, xml=None, vcpus=None, memory=None,
                       pci_ids=(), check_remote=False, time_measurement=None):
        """
        Boot a shut off domain.

        Attached devices are not rolled back when a later step fails.

        :param vm_name: Name of a defined domain, ignored if xml is given.
        :param xml: Domain XML to define before booting.
        :param vcpus: Number of vcpus (maximum and current).
        :param memory: Memory in KiB (maximum and current).
        :param pci_ids: :class:`migfra.drivers.PCIId` to attach in order.
        :param check_remote: Refuse to start a domain that is active on one
                             of the other cluster nodes.
        :return: The name of the started domain.
        """
        time_measurement = time_measurement or TimeMeasurement()
        if xml:
            domain = self.driver.define_domain(xml)
            vm_name = self.driver.domain_name(domain)
            LOG.debug("Defined domain %s.", vm_name)
        elif vm_name:
            domain = self.driver.find_domain(vm_name)
        else:
            raise MalformedRequestError("Neither vm-name nor xml given.")

        state = self.driver.domain_state(domain)
        if state != DomainState.SHUT_OFF:
            raise WrongDomainStateError(vm_name, state, DomainState.SHUT_OFF)

        if check_remote:
            self.check_remote(vm_name)

        if memory:
            self.driver.set_memory(domain, memory, maximum=True)
            self.driver.set_memory(domain, memory)
        if vcpus:
            self.driver.set_vcpus(domain, vcpus, maximum=True)
            self.driver.set_vcpus(domain, vcpus)
        self.driver.set_memory_stats_period(domain, self.memory_stats_period)

        LOG.info("Start domain %s.", vm_name)
        with time_measurement.measure("start"):
            self.driver.create(domain)
            LOG.debug("Attach %s devices.", len(pci_ids))
            for pci_id in pci_ids:
                self.device_driver.attach(domain, pci_id)
            self._wait_until_ready(vm_name)
        return vm_name

    def check_remote(self, vm_name):
        """
        Probe the other cluster nodes for an active domain of this name.

        Nodes which cannot be reached are skipped.

        :raises RemoteConflictError: The domain is not shut off on a node.
        """
        for node in self.cluster_nodes:
            if node in (self.hostname, "localhost"):
                continue
            try:
                conn = self.driver.connect(node, self.driver_name,
                                           self.transport, read_only=True)
            except BackendError as e:
                LOG.warning("Skip remote check on %s: %s", node, e)
                continue
            try:
                try:
                    domain = self.driver.find_domain(vm_name, conn)
                except DomainNotFoundError:
                    continue
                state = self.driver.domain_state(domain)
            finally:
                self.driver.disconnect(conn)
            if state != DomainState.SHUT_OFF:
                raise RemoteConflictError(vm_name, node, state)

    def _wait_until_ready(self, vm_name):
        if self.readiness_probe == "none":
            return

        def _answers():
            result = process.run("ping -c 1 -W 1 %s" % vm_name,
                                 ignore_status=True, verbose=False)
            return result.exit_status == 0

        LOG.debug("Wait for %s to answer.", vm_name)
        if not wait_for(_answers, self.boot_timeout, step=1.0):
            raise DomainStateTimeoutError("waiting for %s to boot" % vm_name,
                                          self.boot_timeout)

    def stop_instance(self, vm_name, force=False, time_measurement=None):
        """
        Detach all devices of a running domain and turn it off.

        :param force: Destroy the domain instead of shutting it down.
        """
        time_measurement = time_measurement or TimeMeasurement()
        domain = self._find_in_state(vm_name, DomainState.RUNNING)

        with time_measurement.measure("stop"):
            self.device_driver.detach(domain)
            if force:
                LOG.info("Destroy domain %s.", vm_name)
                self.driver.destroy(domain)
            else:
                LOG.info("Shut down domain %s.", vm_name)
                self.driver.shutdown(domain)
            shut_off = wait_for(
                lambda: self.driver.domain_state(domain) == DomainState.SHUT_OFF,
                self.shutdown_timeout, step=0.5)
        if not shut_off:
            raise DomainStateTimeoutError("waiting for %s to shut off" %
                                          vm_name, self.shutdown_timeout)

    def migrate_uri(self, destination, rdma):
        if not rdma:
            return None
        return "rdma://%s%s" % (destination, self.rdma_suffix)

    def migrate_instance(self, vm_name, destination, live=True, rdma=False,
                         driver=None, transport=None, pscom_hook_procs=0,
                         memory_ballooning=False, time_measurement=None):
        """
        Migrate a running domain to another host.

        The passthrough devices and the balloon are restored exactly once,
        on the destination if the migration succeeded and on the source
        otherwise. The pscom processes are always resumed.

        :param destination: Host name of the destination.
        :param live: Keep the guest running while its memory is copied.
        :param rdma: Transfer the memory over RDMA.
        :param driver: Hypervisor driver part of the destination URI.
        :param transport: Transport part of the destination URI.
        :param pscom_hook_procs: Number of pscom processes to suspend.
        :param memory_ballooning: Shrink the balloon while migrating.
        """
        time_measurement = time_measurement or TimeMeasurement()
        domain = self._find_in_state(vm_name, DomainState.RUNNING)
        LOG.info("Migrate %s to %s (live=%s, rdma=%s).", vm_name, destination,
                 live, rdma)

        with contextlib.ExitStack() as stack:
            stack.enter_context(SuspendPscom(
                self.comm, vm_name, pscom_hook_procs, self.barrier_timeout,
                self.pscom_topic_prefix, self.qos, time_measurement))
            devices = stack.enter_context(MigrateDevicesGuard(
                self.device_driver, domain, time_measurement))
            balloon = stack.enter_context(MemoryBallooningGuard(
                self.driver, domain, memory_ballooning, self.balloon_timeout,
                self.balloon_confirm_timeout, time_measurement))

            conn = self.driver.connect(destination,
                                       driver or self.driver_name,
                                       transport or self.transport)
            stack.callback(self.driver.disconnect, conn)

            with time_measurement.measure("migrate"):
                dest_domain = self.driver.migrate(
                    domain, conn, live, self.migrate_uri(destination, rdma))
            LOG.info("Migrated %s to %s.", vm_name, destination)

            devices.set_destination_domain(dest_domain)
            balloon.set_destination_domain(dest_domain)
            balloon.restore()
            devices.reattach()
