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
import os
import signal
import sys
import threading

from migfra.core import data_dir
from migfra.core.config import Config, ConfigError, short_hostname
from migfra.core.logger import init_logger
from migfra.drivers import get_device_driver, get_hypervisor_driver
from migfra.drivers.mqtt import MQTTCommunicator
from migfra.exceptions import (CommunicatorTimeoutError, MalformedRequestError,
                               MigfraError)
from migfra.executor import TaskExecutor, ThreadCounter
from migfra.task import Task
from migfra.vmm import VirtualMachinesManager

from .args import init_arguments

LOG = logging.getLogger(__name__)

POLL_INTERVAL = 1.0


def serve(comm, executor, stop_event=None, poll_interval=POLL_INTERVAL):
    """
    Execute the tasks arriving on the task topic until a quit task arrives
    or stop_event is set.

    Messages which are no valid task are logged and skipped, so are tasks
    whose execution fails, e.g. because the reply cannot be published.
    """
    stop_event = stop_event or threading.Event()
    LOG.info("Waiting for tasks.")
    while not stop_event.is_set():
        try:
            message = comm.get_message(timeout=poll_interval)
        except CommunicatorTimeoutError:
            continue
        try:
            task = Task.from_yaml(message)
        except MalformedRequestError as e:
            LOG.warning("Skipping invalid task: %s", e)
            LOG.debug("Invalid task message:\n%s", message)
            continue
        if task.is_quit:
            LOG.info("Quit task received.")
            return
        LOG.info("Executing \"%s\" task with %s sub-tasks.", task.type(),
                 len(task))
        try:
            executor.execute(task)
        except MigfraError as e:
            LOG.error("Error in \"%s\" task: %s", task.type(), e)
    LOG.info("Stop requested.")


def _connect_communicator(config):
    return MQTTCommunicator(
        "migfra-%s-%s" % (short_hostname(), os.getpid()),
        config.get_topic("task_topic"),
        config.get_topic("result_topic"),
        host=config.get("communicator", "host"),
        port=config.get_int("communicator", "port"),
        keepalive=config.get_int("communicator", "keepalive"),
        qos=config.get_int("communicator", "qos"))


def run(config, pid_file=None):
    """
    Run the migration daemon.

    :param config: The :class:`migfra.core.config.Config`.
    :param pid_file: The PID file, none is written if None.
    """
    stop_event = threading.Event()

    def _on_sigterm(signum, frame):
        LOG.info("Received signal %s.", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _on_sigterm)

    pid = str(os.getpid())
    LOG.info("Running the migration daemon with PID %s", pid)
    if pid_file:
        with open(pid_file, "w+") as f:
            f.write(pid + "\n")

    thread_counter = ThreadCounter()
    driver = comm = None
    try:
        driver = get_hypervisor_driver("libvirt",
                                       config.get("hypervisor", "uri"))
        device_driver = get_device_driver("libvirt")
        comm = _connect_communicator(config)
        vmm = VirtualMachinesManager(driver, device_driver, comm, config)
        serve(comm, TaskExecutor(vmm, comm, thread_counter), stop_event)
    finally:
        thread_counter.wait_for_threads_to_finish()
        if comm is not None:
            comm.close()
        if driver is not None:
            driver.close()
        if pid_file:
            try:
                os.remove(pid_file)
            except OSError:
                pass


def main(argv=None):
    args = init_arguments(argv)
    try:
        config = Config(args.config)
    except ConfigError as e:
        sys.stderr.write("%s\n" % e)
        sys.exit(2)
    if args.host:
        config.set("communicator", "host", args.host)
    if args.port:
        config.set("communicator", "port", args.port)

    os.makedirs(data_dir.get_log_dir(), exist_ok=True)
    init_logger(args.log_level)

    try:
        run(config, args.pid_file)
    except KeyboardInterrupt:
        LOG.warning("Keyboard interrupt received, exiting.")
        sys.exit(0)
    except Exception as e:
        LOG.error(e, exc_info=True)
        sys.exit(-1)
