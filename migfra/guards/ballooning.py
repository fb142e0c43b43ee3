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
Memory balloon handling around a migration.

Resizing a balloon is asynchronous: the hypervisor only forwards the new
target to the guest driver, which then inflates or deflates page by page.
Completion is detected from balloon change events, see
:class:`BalloonAdaptation`.
"""

import logging
import threading
import time

from avocado.utils.wait import wait_for

from migfra.exceptions import BalloonTimeoutError
from migfra.guards import ScopeGuard

LOG = logging.getLogger(__name__)

#: Balloon values are multiples of this (KiB).
PAGE_SIZE = 4

#: Share of the unused guest memory kept while migrating.
UNUSED_HEADROOM = 0.05

DEFAULT_TIMEOUT = 60
DEFAULT_CONFIRM_TIMEOUT = 1.0


def migration_target(stats):
    """
    Balloon size used while migrating: the used memory plus a small part of
    the unused memory, aligned down to the page size.

    :param stats: :class:`migfra.drivers.MemoryStats` of the domain.
    :return: Target in KiB.
    """
    used = stats.actual - stats.unused
    target = used + int(stats.unused * UNUSED_HEADROOM)
    return target - target % PAGE_SIZE


class BalloonAdaptation(object):

    """
    Balloon change callback that signals when the expected value is reached.

    Every notification yields the step since the previous one and the rate of
    change. Once the remaining distance is below the last step the target is
    close enough to be reached with the next step, so the signal is scheduled
    after the estimated remaining time instead of waiting for a notification
    that may never match exactly.

    :param expected: Requested balloon size (KiB).
    :param current: Balloon size before the request (KiB).
    """

    def __init__(self, expected, current):
        self.expected = expected
        self.last_value = current
        self.last_time = time.monotonic()
        self.last_step = None
        self.rate = None
        self.event = threading.Event()
        self._lock = threading.Lock()
        self._timer = None

    def __call__(self, value):
        with self._lock:
            if self.event.is_set() or self._timer is not None:
                return
            now = time.monotonic()
            step = abs(value - self.last_value)
            elapsed = now - self.last_time
            remaining = abs(self.expected - value)
            self.last_value = value
            self.last_time = now
            if step:
                self.last_step = step
                self.rate = step / elapsed if elapsed > 0 else None
            LOG.debug("Balloon at %s KiB, %s KiB to go.", value, remaining)

            if remaining == 0:
                self.event.set()
            elif self.last_step is not None and remaining < self.last_step:
                delay = remaining / self.rate if self.rate else 0
                # Notifications arrive on the event loop thread, which must
                # not block.
                self._timer = threading.Timer(delay, self.event.set)
                self._timer.daemon = True
                self._timer.start()

    def wait(self, timeout=None):
        return self.event.wait(timeout)

    def cancel(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()


def resize_balloon(driver, domain, value, timeout=DEFAULT_TIMEOUT,
                   confirm_timeout=DEFAULT_CONFIRM_TIMEOUT):
    """
    Set the balloon of a running domain and wait until the guest follows.

    :param driver: The :class:`migfra.drivers.HypervisorDriver` in use.
    :param value: New balloon size in KiB.
    :param timeout: Seconds to wait for convergence.
    :param confirm_timeout: Seconds to poll the statistics for the exact
                            value after convergence was signalled.
    :raises BalloonTimeoutError: The balloon did not converge in time.
    """
    current = driver.balloon_stats(domain).actual
    if current == value:
        LOG.debug("Balloon already at %s KiB.", value)
        return
    LOG.info("Resize balloon of %s from %s KiB to %s KiB.",
             driver.domain_name(domain), current, value)

    adaptation = BalloonAdaptation(value, current)
    handle = driver.subscribe_balloon_change(domain, adaptation)
    try:
        driver.set_balloon(domain, value)
        converged = adaptation.wait(timeout)
        if converged:
            confirmed = wait_for(
                lambda: driver.balloon_stats(domain).actual == value,
                confirm_timeout, step=0.1)
            if not confirmed:
                LOG.debug("Balloon at %s KiB after convergence, expected %s "
                          "KiB.", driver.balloon_stats(domain).actual, value)
    finally:
        adaptation.cancel()
        driver.unsubscribe(handle)

    if not converged:
        raise BalloonTimeoutError("resizing balloon to %s KiB" % value,
                                  timeout)


class MemoryBallooningGuard(ScopeGuard):

    """
    Shrink the balloon of a domain to its used memory for the time of a
    migration and grow it back to its maximum memory afterwards.

    A disabled guard does nothing. The value to restore is captured when the
    guard is entered; it is restored on the domain targeted at release time.

    :param driver: The :class:`migfra.drivers.HypervisorDriver` in use.
    :param domain: Handle of the source domain.
    :param enabled: Whether memory ballooning was requested.
    """

    description = "memory balloon"

    def __init__(self, driver, domain, enabled=True, timeout=DEFAULT_TIMEOUT,
                 confirm_timeout=DEFAULT_CONFIRM_TIMEOUT,
                 time_measurement=None):
        super(MemoryBallooningGuard, self).__init__(time_measurement)
        self.driver = driver
        self.domain = domain
        self.enabled = enabled
        self.timeout = timeout
        self.confirm_timeout = confirm_timeout
        self.initial_memory = None
        self._shrunk = False

    def acquire(self):
        if not self.enabled:
            return
        self.initial_memory = self.driver.max_memory(self.domain)
        stats = self.driver.balloon_stats(self.domain)
        target = migration_target(stats)
        LOG.debug("Used memory: %s KiB, memory during migration: %s KiB.",
                  stats.actual - stats.unused, target)
        if target >= stats.actual:
            LOG.info("Balloon of %s cannot shrink below %s KiB, skipping.",
                     self.driver.domain_name(self.domain), stats.actual)
            return
        self._shrunk = True
        with self.time_measurement.measure("shrink-balloon"):
            resize_balloon(self.driver, self.domain, target, self.timeout,
                           self.confirm_timeout)

    def set_destination_domain(self, domain):
        self.domain = domain

    def restore(self):
        self.release()

    def _release(self):
        if not self._shrunk:
            return
        with self.time_measurement.measure("restore-balloon"):
            resize_balloon(self.driver, self.domain, self.initial_memory,
                           self.timeout, self.confirm_timeout)
