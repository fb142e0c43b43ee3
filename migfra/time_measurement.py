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

import contextlib
import logging
import threading
import time

LOG = logging.getLogger(__name__)


class TimeMeasurement(object):

    """
    Collect named durations of the phases of one sub-task.

    A disabled instance accepts every call and records nothing, so callers
    never have to check whether measuring was requested.
    """

    def __init__(self, enabled=False):
        self.enabled = enabled
        self._lock = threading.Lock()
        self._started = {}
        self._durations = {}

    def tick(self, name):
        if not self.enabled:
            return
        with self._lock:
            if name in self._started:
                LOG.warning("Time measurement '%s' is restarted.", name)
            self._started[name] = time.monotonic()

    def tock(self, name):
        if not self.enabled:
            return
        with self._lock:
            try:
                start = self._started.pop(name)
            except KeyError:
                LOG.warning("Time measurement '%s' was never started.", name)
                return
            self._durations[name] = time.monotonic() - start

    @contextlib.contextmanager
    def measure(self, name):
        self.tick(name)
        try:
            yield
        finally:
            self.tock(name)

    def emit(self):
        """
        :return: Mapping of phase name to seconds, empty when disabled.
        :rtype: dict
        """
        with self._lock:
            return dict(self._durations)
