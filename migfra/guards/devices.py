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

import logging

from migfra.guards import ScopeGuard

LOG = logging.getLogger(__name__)


class MigrateDevicesGuard(ScopeGuard):

    """
    Keep the passthrough devices of a domain detached while it migrates.

    The devices are reattached in detach order to the domain targeted at
    release time, the source unless :meth:`set_destination_domain` was
    called.

    :param device_driver: The :class:`migfra.drivers.DeviceDriver` in use.
    :param domain: Handle of the source domain.
    """

    description = "passthrough devices"

    def __init__(self, device_driver, domain, time_measurement=None):
        super(MigrateDevicesGuard, self).__init__(time_measurement)
        self.device_driver = device_driver
        self.domain = domain
        self.detached = []

    def acquire(self):
        with self.time_measurement.measure("detach-devices"):
            self.detached = list(self.device_driver.detach(self.domain))
        if self.detached:
            LOG.debug("Detached devices: %s", self.detached)

    def set_destination_domain(self, domain):
        self.domain = domain

    def reattach(self):
        self.release()

    def _release(self):
        if not self.detached:
            return
        with self.time_measurement.measure("reattach-devices"):
            for pci_id in self.detached:
                self.device_driver.attach(self.domain, pci_id)
        LOG.debug("Reattached devices: %s", self.detached)
