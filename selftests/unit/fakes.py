"""
In-memory stand-ins of the hypervisor, the device backend and the message
transport, recording every call they get.
"""

import itertools
import queue
import re
import threading

from migfra.communicator import Communicator
from migfra.drivers import (DeviceDriver, DomainState, HypervisorDriver,
                            MemoryStats)
from migfra.exceptions import (BackendError, CommunicatorTimeoutError,
                               DeviceError, DomainNotFoundError,
                               MigrationError)

LOCAL = "local"


class FakeDomain(object):

    def __init__(self, name, state=DomainState.SHUT_OFF, max_memory=4194304,
                 actual=4194304, unused=2097152, hostdevs=(), host=LOCAL):
        self.name = name
        self.state = state
        self.max_memory = max_memory
        self.memory = max_memory
        self.vcpus = 1
        self.max_vcpus = 1
        self.actual = actual
        self.unused = unused
        self.hostdevs = list(hostdevs)
        self.host = host
        self.stats_period = None

    def copy_to(self, host):
        domain = FakeDomain(self.name, self.state, self.max_memory,
                            self.actual, self.unused, self.hostdevs, host)
        domain.memory = self.memory
        domain.vcpus = self.vcpus
        return domain

    def __repr__(self):
        return "FakeDomain(%s@%s)" % (self.name, self.host)


class FakeConnection(object):

    def __init__(self, host, domains):
        self.host = host
        self.domains = domains
        self.closed = False


class FakeDriver(HypervisorDriver):

    """
    :param domains: FakeDomain instances of the local host.
    """

    def __init__(self, domains=()):
        self.domains = dict((domain.name, domain) for domain in domains)
        self.remote_domains = {}
        self.unreachable = set()
        self.calls = []
        self.connections = []
        self.migrate_error = None
        self.balloon_events_lost = False
        self.shutdown_ignored = False
        self._callbacks = {}
        self._handles = itertools.count()
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def calls_of(self, name):
        return [call[1:] for call in self.calls if call[0] == name]

    def find_domain(self, name, conn=None):
        domains = conn.domains if conn is not None else self.domains
        try:
            return domains[name]
        except KeyError:
            raise DomainNotFoundError(name)

    def define_domain(self, xml):
        match = re.search(r"<name>(.*?)</name>", xml)
        if match is None:
            raise BackendError("defining domain", "missing name")
        domain = self.domains.setdefault(match.group(1),
                                         FakeDomain(match.group(1)))
        self._record("define_domain", domain.name)
        return domain

    def domain_name(self, domain):
        return domain.name

    def domain_state(self, domain):
        return domain.state

    def max_memory(self, domain):
        return domain.max_memory

    def set_memory(self, domain, value, maximum=False):
        self._record("set_memory", domain.name, value, maximum)
        if maximum:
            domain.max_memory = value
        else:
            domain.memory = value

    def set_vcpus(self, domain, value, maximum=False):
        self._record("set_vcpus", domain.name, value, maximum)
        if maximum:
            domain.max_vcpus = value
        else:
            domain.vcpus = value

    def set_memory_stats_period(self, domain, period):
        domain.stats_period = period

    def create(self, domain):
        self._record("create", domain.name)
        domain.state = DomainState.RUNNING
        domain.actual = domain.memory

    def destroy(self, domain):
        self._record("destroy", domain.name)
        domain.state = DomainState.SHUT_OFF

    def shutdown(self, domain):
        self._record("shutdown", domain.name)
        if not self.shutdown_ignored:
            domain.state = DomainState.SHUT_OFF

    def connect(self, host, driver, transport, read_only=False):
        self._record("connect", host, driver, transport, read_only)
        if host in self.unreachable:
            raise BackendError("connecting to %s" % host, "unreachable")
        conn = FakeConnection(host, self.remote_domains.setdefault(host, {}))
        self.connections.append(conn)
        return conn

    def disconnect(self, conn):
        conn.closed = True

    def migrate(self, domain, conn, live=True, migrate_uri=None):
        self._record("migrate", domain.name, conn.host, live, migrate_uri)
        if self.migrate_error:
            raise MigrationError(self.migrate_error)
        dest_domain = domain.copy_to(conn.host)
        conn.domains[domain.name] = dest_domain
        domain.state = DomainState.SHUT_OFF
        return dest_domain

    def balloon_stats(self, domain):
        return MemoryStats(domain.unused, domain.max_memory, domain.actual)

    def set_balloon(self, domain, value):
        self._record("set_balloon", domain.name, domain.host, value)
        domain.actual = value
        if self.balloon_events_lost:
            return
        for callback_domain, callback in list(self._callbacks.values()):
            if callback_domain is domain:
                callback(value)

    def subscribe_balloon_change(self, domain, callback):
        handle = next(self._handles)
        self._callbacks[handle] = (domain, callback)
        return handle

    def unsubscribe(self, handle):
        self._record("unsubscribe", handle)
        del self._callbacks[handle]

    @property
    def subscriptions(self):
        return len(self._callbacks)


class FakeDeviceDriver(DeviceDriver):

    def __init__(self):
        self.calls = []
        self.fail_attach = False

    def attach(self, domain, pci_id):
        self.calls.append(("attach", domain.name, domain.host, pci_id))
        if self.fail_attach:
            raise DeviceError("attaching device %s" % pci_id, "busy")
        domain.hostdevs.append(pci_id)

    def detach(self, domain):
        detached = list(domain.hostdevs)
        domain.hostdevs = []
        self.calls.append(("detach", domain.name, domain.host, detached))
        return detached

    def attached(self, host=None):
        return [call[3] for call in self.calls
                if call[0] == "attach" and (host is None or call[2] == host)]


class FakeCommunicator(Communicator):

    """
    :param on_publish: Called as ``on_publish(comm, topic, message)`` for
                       every published message.
    """

    def __init__(self, subscribe_topic="task", publish_topic="result",
                 on_publish=None):
        self.subscribe_topic = subscribe_topic
        self.publish_topic = publish_topic
        self.on_publish = on_publish
        self.sent = []
        self.removed = []
        self.subscription_qos = {}
        self.closed = False
        self._queues = {subscribe_topic: queue.Queue()}
        self._lock = threading.Lock()

    def send_message(self, message, topic=None, qos=None):
        topic = topic or self.publish_topic
        with self._lock:
            self.sent.append((topic, message))
        if self.on_publish is not None:
            self.on_publish(self, topic, message)

    def messages(self, topic=None):
        topic = topic or self.publish_topic
        with self._lock:
            return [message for sent_topic, message in self.sent
                    if sent_topic == topic]

    def add_subscription(self, topic, qos=None):
        self._queues.setdefault(topic, queue.Queue())
        self.subscription_qos[topic] = qos

    def remove_subscription(self, topic):
        self._queues.pop(topic, None)
        self.removed.append(topic)

    def is_subscribed(self, topic):
        return topic in self._queues

    def deliver(self, topic, message):
        """Put a message into the subscription of topic, if any."""
        messages = self._queues.get(topic)
        if messages is not None:
            messages.put(message)

    def get_message(self, topic=None, timeout=None):
        messages = self._queues[topic or self.subscribe_topic]
        try:
            return messages.get(timeout=timeout)
        except queue.Empty:
            raise CommunicatorTimeoutError("No message on %s." % topic)

    def close(self):
        self.closed = True
