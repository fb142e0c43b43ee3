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
Errors raised by the migration framework.

Everything derived from :class:`MigfraError` is converted into an error
result at the sub-task boundary and never reaches the task executor.
"""


class MigfraError(Exception):

    def __init__(self, *args):
        Exception.__init__(self, *args)


class DomainNotFoundError(MigfraError):

    def __init__(self, name):
        MigfraError.__init__(self, name)
        self.name = name

    def __str__(self):
        return "Domain not found."


class WrongDomainStateError(MigfraError):

    def __init__(self, name, state, expected=None):
        MigfraError.__init__(self, name, state, expected)
        self.name = name
        self.state = state
        self.expected = expected

    def __str__(self):
        return "Wrong domain state: %s" % self.state


class DomainNotRunningError(WrongDomainStateError):

    def __init__(self, name, state):
        super(DomainNotRunningError, self).__init__(name, state, "running")

    def __str__(self):
        return "Domain not running."


class BackendError(MigfraError):

    """
    A hypervisor primitive failed.

    :param operation: Human readable description of what was attempted.
    :param reason: The native error message of the backend.
    """

    def __init__(self, operation, reason=None):
        MigfraError.__init__(self, operation, reason)
        self.operation = operation
        self.reason = reason

    def __str__(self):
        msg = "Error %s" % self.operation
        if self.reason:
            msg += ": %s" % self.reason
        return msg


class MigrationError(BackendError):

    def __init__(self, reason):
        super(MigrationError, self).__init__("migrating domain", reason)

    def __str__(self):
        return "Migration failed: %s" % self.reason


class DeviceError(BackendError):
    pass


class RemoteConflictError(MigfraError):

    def __init__(self, name, node, state):
        MigfraError.__init__(self, name, node, state)
        self.name = name
        self.node = node
        self.state = state

    def __str__(self):
        return ("Domain %s is already in state '%s' on node %s." %
                (self.name, self.state, self.node))


class MigfraTimeoutError(MigfraError):

    def __init__(self, what, timeout):
        MigfraError.__init__(self, what, timeout)
        self.what = what
        self.timeout = timeout

    def __str__(self):
        return "Timeout after %s s while %s." % (self.timeout, self.what)


class BalloonTimeoutError(MigfraTimeoutError):
    pass


class BarrierTimeoutError(MigfraTimeoutError):
    pass


class DomainStateTimeoutError(MigfraTimeoutError):
    pass


class MalformedRequestError(MigfraError):

    def __init__(self, msg):
        MigfraError.__init__(self, msg)
        self.msg = msg

    def __str__(self):
        return self.msg


class NoTaskError(MalformedRequestError):
    pass


class CommunicatorError(MigfraError):
    pass


class CommunicatorTimeoutError(CommunicatorError):
    pass


class QuitTaskExecutedError(Exception):

    """Raised when a quit task reaches the executor instead of the caller."""

    def __str__(self):
        return "Quit task is executed, but it should be handled before."
