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
import time

from migfra.exceptions import BarrierTimeoutError, CommunicatorTimeoutError
from migfra.guards import ScopeGuard

LOG = logging.getLogger(__name__)

SUSPEND_MESSAGE = "suspend"
RESUME_MESSAGE = "resume"

DEFAULT_TIMEOUT = 60

ACKNOWLEDGE_QOS = 2


def request_topic(prefix, vm_name):
    return "%s%s/suspend/request" % (prefix, vm_name)


def response_topic(prefix, vm_name):
    return "%s%s/suspend/response" % (prefix, vm_name)


class SuspendPscom(ScopeGuard):

    """
    Suspend the pscom processes inside a guest while it migrates.

    Entering publishes a suspend request for the guest and blocks until
    every expected process has acknowledged it. Leaving publishes the resume
    request without waiting for answers.

    Each message on the response topic is one acknowledgement, whatever its
    payload. The response topic is subscribed at QoS 2 so that no
    acknowledgement is delivered twice.

    :param comm: The :class:`migfra.communicator.Communicator` in use.
    :param vm_name: Name of the guest.
    :param procs: Number of pscom processes in the guest, 0 disables the
                  barrier.
    :param topic_prefix: Prepended to the request and response topics.
    """

    description = "pscom suspension"

    def __init__(self, comm, vm_name, procs, timeout=DEFAULT_TIMEOUT,
                 topic_prefix="", qos=None, time_measurement=None):
        super(SuspendPscom, self).__init__(time_measurement)
        self.comm = comm
        self.vm_name = vm_name
        self.procs = procs
        self.timeout = timeout
        self.qos = qos
        self.request_topic = request_topic(topic_prefix, vm_name)
        self.response_topic = response_topic(topic_prefix, vm_name)
        self.answers = 0
        self._requested = False

    def acquire(self):
        if not self.procs:
            return
        with self.time_measurement.measure("suspend-pscom"):
            self._suspend()

    def _suspend(self):
        # Subscribe first, answers may arrive before the publish returns.
        self.comm.add_subscription(self.response_topic, ACKNOWLEDGE_QOS)
        try:
            self._requested = True
            self.comm.send_message(SUSPEND_MESSAGE, self.request_topic,
                                   self.qos)
            deadline = time.monotonic() + self.timeout
            while self.answers < self.procs:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise BarrierTimeoutError(self._waiting_for(), self.timeout)
                try:
                    self.comm.get_message(self.response_topic, remaining)
                except CommunicatorTimeoutError:
                    raise BarrierTimeoutError(self._waiting_for(), self.timeout)
                self.answers += 1
                LOG.debug("Suspend acknowledged by %s of %s processes of %s.",
                          self.answers, self.procs, self.vm_name)
        finally:
            self.comm.remove_subscription(self.response_topic)

    def _waiting_for(self):
        return ("waiting for pscom suspend acknowledgements of %s (%s of %s)"
                % (self.vm_name, self.answers, self.procs))

    def _release(self):
        if not self._requested:
            return
        with self.time_measurement.measure("resume-pscom"):
            self.comm.send_message(RESUME_MESSAGE, self.request_topic,
                                   self.qos)
        LOG.debug("Resume requested for %s.", self.vm_name)
