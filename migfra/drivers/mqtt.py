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
import queue
import threading

import paho.mqtt.client as mqtt

from migfra.communicator import Communicator
from migfra.exceptions import CommunicatorError, CommunicatorTimeoutError

LOG = logging.getLogger(__name__)


class MQTTCommunicator(Communicator):

    """
    Communicator on top of an MQTT broker.

    :param client_id: MQTT client id, must be unique per broker.
    :param subscribe_topic: Default subscription (the task topic).
    :param publish_topic: Default topic of :meth:`send_message`.
    """

    def __init__(self, client_id, subscribe_topic, publish_topic,
                 host="localhost", port=1883, keepalive=60, qos=2,
                 connect_timeout=10):
        self.subscribe_topic = subscribe_topic
        self.publish_topic = publish_topic
        self.qos = qos
        self._lock = threading.Lock()
        self._queues = {}
        self._qos = {}
        self._connected = threading.Event()

        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2,
                                   client_id=client_id)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        LOG.info("Connecting to MQTT broker %s:%s as %s.", host, port, client_id)
        try:
            self._client.connect(host, port, keepalive)
        except (OSError, ValueError) as e:
            raise CommunicatorError("Cannot connect to %s:%s: %s" %
                                    (host, port, e))
        self._client.loop_start()
        if not self._connected.wait(connect_timeout):
            self._client.loop_stop()
            raise CommunicatorError("No connection to %s:%s within %s s." %
                                    (host, port, connect_timeout))
        self.add_subscription(subscribe_topic)

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            LOG.error("MQTT connection refused: %s", reason_code)
            return
        LOG.debug("Connected to MQTT broker.")
        with self._lock:
            subscriptions = list(self._qos.items())
        # Subscriptions are lost when the broker drops a clean session.
        for topic, qos in subscriptions:
            client.subscribe(topic, qos)
        self._connected.set()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self._connected.clear()
        if reason_code.is_failure:
            LOG.warning("Unexpected disconnect from MQTT broker: %s",
                        reason_code)

    def _on_message(self, client, userdata, message):
        payload = message.payload.decode("utf-8", "replace")
        delivered = False
        with self._lock:
            for topic, messages in self._queues.items():
                if mqtt.topic_matches_sub(topic, message.topic):
                    messages.put(payload)
                    delivered = True
        if not delivered:
            LOG.debug("Dropping message on unsubscribed topic %s.",
                      message.topic)

    def send_message(self, message, topic=None, qos=None):
        topic = topic or self.publish_topic
        qos = self.qos if qos is None else qos
        info = self._client.publish(topic, message, qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise CommunicatorError("Publishing on %s failed: %s" %
                                    (topic, mqtt.error_string(info.rc)))

    def add_subscription(self, topic, qos=None):
        qos = self.qos if qos is None else qos
        with self._lock:
            if topic in self._queues:
                return
            self._queues[topic] = queue.Queue()
            self._qos[topic] = qos
        result, _ = self._client.subscribe(topic, qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            with self._lock:
                del self._queues[topic]
                del self._qos[topic]
            raise CommunicatorError("Subscribing to %s failed: %s" %
                                    (topic, mqtt.error_string(result)))
        LOG.debug("Subscribed to %s.", topic)

    def remove_subscription(self, topic):
        with self._lock:
            self._queues.pop(topic, None)
            self._qos.pop(topic, None)
        self._client.unsubscribe(topic)
        LOG.debug("Unsubscribed from %s.", topic)

    def get_message(self, topic=None, timeout=None):
        topic = topic or self.subscribe_topic
        with self._lock:
            try:
                messages = self._queues[topic]
            except KeyError:
                raise CommunicatorError("Not subscribed to %s." % topic)
        try:
            return messages.get(timeout=timeout)
        except queue.Empty:
            raise CommunicatorTimeoutError("No message on %s within %s s." %
                                           (topic, timeout))

    def close(self):
        self._client.loop_stop()
        self._client.disconnect()
