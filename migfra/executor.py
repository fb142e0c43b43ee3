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
Execution of tasks.

A task runs on its own thread when it is concurrent, otherwise on the
caller's thread. Its concurrent sub-tasks are started right away; the others
run one after the other while the results are collected. Every sub-task
yields one :class:`migfra.task.Result`, errors included.
"""

import logging
import threading

from migfra.exceptions import QuitTaskExecutedError
from migfra.task import ERROR, SUCCESS, Result, ResultContainer
from migfra.time_measurement import TimeMeasurement

LOG = logging.getLogger(__name__)


class ThreadCounter(object):

    """
    Number of task threads still running.

    Uses a threading condition to implement the count and the wait for it to
    reach zero.
    """

    def __init__(self):
        self._count = 0
        self._lock = threading.Condition()

    def count_up(self):
        with self._lock:
            self._count += 1

    def count_down(self):
        """ Count down and notify all waiters if no outstanding counts """
        with self._lock:
            # It is illegal for the count to go to negative
            if self._count == 0:
                raise ValueError("count < 0")
            self._count -= 1

            if self._count == 0:
                self._lock.notify_all()

    @property
    def count(self):
        with self._lock:
            return self._count

    def wait_for_threads_to_finish(self, timeout=None):
        """
        Block until no task thread is running.

        :param timeout: Seconds to wait at most, forever if None.
        :return: True if the count reached zero, False on timeout.
        """
        LOG.debug("Waiting for threads to finish...")
        with self._lock:
            finished = self._lock.wait_for(lambda: self._count == 0, timeout)
        if finished:
            LOG.debug("All threads are finished.")
        return finished


class SubTaskFuture(object):

    """
    Result of a sub-task that is either running on its own thread already or
    runs on the first call of :meth:`result`.

    :param target: Function computing the result.
    :param concurrent: Start a thread for target right away.
    """

    def __init__(self, target, concurrent=True, name=None):
        self._target = target
        self._retval = None
        self._done = False
        self._thread = None
        if concurrent:
            self._thread = threading.Thread(target=self._run, name=name)
            self._thread.start()

    def _run(self):
        try:
            self._retval = self._target()
        finally:
            self._done = True
            del self._target

    def result(self):
        if self._thread is not None:
            self._thread.join()
        elif not self._done:
            self._run()
        return self._retval


class TaskExecutor(object):

    """
    :param vmm: The :class:`migfra.vmm.VirtualMachinesManager`.
    :param comm: The :class:`migfra.communicator.Communicator` the results
                 are sent with.
    :param thread_counter: Registry of the concurrent task threads, see
                           :meth:`ThreadCounter.wait_for_threads_to_finish`.
    """

    def __init__(self, vmm, comm, thread_counter=None):
        self.vmm = vmm
        self.comm = comm
        self.thread_counter = thread_counter or ThreadCounter()

    def execute(self, task):
        """
        Execute all sub-tasks of a task and send the results.

        Returns as soon as the task thread is started if the task is
        concurrent.

        :raises QuitTaskExecutedError: The task is a quit task, which has
                                       to be handled by the caller.
        """
        if task.is_quit:
            raise QuitTaskExecutedError()
        if not task.sub_tasks:
            LOG.debug("Skipping \"%s\" task without sub-tasks.", task.type())
            return

        if not task.concurrent_execution:
            self._execute(task)
            return

        self.thread_counter.count_up()
        try:
            thread = threading.Thread(target=self._execute_counted,
                                      args=(task,),
                                      name="task-%s" % task.type().replace(" ", "-"))
            thread.start()
        except Exception:
            self.thread_counter.count_down()
            raise

    def _execute_counted(self, task):
        try:
            self._execute(task)
        except Exception:
            LOG.error("Error in \"%s\" task thread.", task.type(),
                      exc_info=True)
        finally:
            self.thread_counter.count_down()

    def _execute(self, task):
        futures = [SubTaskFuture(self._sub_task_body(sub_task),
                                 sub_task.concurrent_execution,
                                 name="sub-task-%s" % sub_task.name)
                   for sub_task in task.sub_tasks]
        results = [future.result() for future in futures]
        container = ResultContainer(task.type(result_format=True), results)
        self.comm.send_message(container.to_yaml())

    def _sub_task_body(self, sub_task):
        def _body():
            time_measurement = TimeMeasurement(sub_task.time_measurement)
            vm_name = sub_task.name
            try:
                vm_name = sub_task.run(self.vmm, time_measurement)
            except QuitTaskExecutedError:
                raise
            except Exception as e:
                LOG.warning("Exception in \"%s\" sub-task of %s: %s",
                            type(sub_task).__name__, vm_name, e)
                return Result(vm_name, ERROR, str(e) or type(e).__name__,
                              time_measurement.emit() or None)
            return Result(vm_name, SUCCESS,
                          time_measurement=time_measurement.emit() or None)
        return _body
