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
Publish/subscribe messaging used for tasks, results and the pscom hooks.
"""

from abc import ABCMeta
from abc import abstractmethod


class Communicator(metaclass=ABCMeta):

    """
    Topic based message transport.

    Messages are text; every subscription buffers its messages until they are
    fetched with :meth:`get_message`, so nothing published between
    :meth:`add_subscription` and the first :meth:`get_message` is lost.
    """

    @abstractmethod
    def send_message(self, message, topic=None, qos=None):
        """
        :param topic: Topic to publish on, the default publish topic if None.
        :param qos: Service level, the configured default if None.
        """
        raise NotImplementedError

    @abstractmethod
    def add_subscription(self, topic, qos=None):
        raise NotImplementedError

    @abstractmethod
    def remove_subscription(self, topic):
        raise NotImplementedError

    @abstractmethod
    def get_message(self, topic=None, timeout=None):
        """
        Block until a message arrives on a subscribed topic.

        :param topic: Subscription to read, the default subscription if None.
        :param timeout: Seconds to wait, forever if None.
        :raises CommunicatorTimeoutError: Nothing arrived within timeout.
        """
        raise NotImplementedError

    def close(self):
        pass
