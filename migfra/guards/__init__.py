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
Scoped acquisition of the resources touched by a migration.

A guard acquires its resource when its ``with`` block is entered and
releases it exactly once: either explicitly through :meth:`ScopeGuard.release`
(errors propagate to the caller) or automatically when the block is left
(errors are logged and dropped so they never hide the error that caused
the unwind).
"""

import logging

from migfra.time_measurement import TimeMeasurement

LOG = logging.getLogger(__name__)


class ScopeGuard(object):

    #: Used in log messages.
    description = "resource"

    def __init__(self, time_measurement=None):
        self.time_measurement = time_measurement or TimeMeasurement()
        self._released = False

    def acquire(self):
        raise NotImplementedError

    def _release(self):
        raise NotImplementedError

    @property
    def released(self):
        return self._released

    def release(self):
        """
        Undo the acquisition. Only the first call has an effect, even when
        it fails.
        """
        if self._released:
            return
        self._released = True
        self._release()

    def _cleanup(self):
        try:
            self.release()
        except Exception:
            LOG.error("Error while releasing %s.", self.description,
                      exc_info=True)

    def __enter__(self):
        try:
            self.acquire()
        except Exception:
            # A partial acquisition is undone before the error propagates.
            self._cleanup()
            raise
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self._cleanup()
        return False
