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
Tasks, their sub-tasks and results, and their YAML representation.

A request looks like::

    task: start vm
    concurrent-execution: true
    vm-configurations:
      - vm-name: vm1
        vcpus: 4
        memory: 2097152
        pci-ids:
          - {vendor: 0x15b3, device: 0x1004}

and is answered with::

    result: vm started
    list:
      - vm-name: vm1
        status: success
"""

import collections

import yaml

from migfra.drivers import PCIId
from migfra.exceptions import (MalformedRequestError, NoTaskError,
                               QuitTaskExecutedError)

SUCCESS = "success"
ERROR = "error"

_MISSING = object()


def _get(node, key, default=_MISSING, convert=None):
    value = node.get(key) if isinstance(node, dict) else None
    if value is None:
        if default is _MISSING:
            raise MalformedRequestError("Missing required field \"%s\"." % key)
        return default
    if convert is None:
        return value
    try:
        return convert(value)
    except (TypeError, ValueError):
        raise MalformedRequestError("Invalid value for \"%s\": %r" %
                                    (key, value))


def _to_bool(value):
    if not isinstance(value, bool):
        raise ValueError(value)
    return value


def dump(node):
    return yaml.safe_dump(node, default_flow_style=False, sort_keys=False)


class Result(collections.namedtuple("Result", ["vm_name", "status", "details",
                                               "time_measurement"])):

    """
    Outcome of one sub-task.
    """

    __slots__ = ()

    def __new__(cls, vm_name, status, details=None, time_measurement=None):
        return super(Result, cls).__new__(cls, vm_name, status, details,
                                          time_measurement)

    @property
    def success(self):
        return self.status == SUCCESS

    def emit(self):
        node = {"vm-name": self.vm_name, "status": self.status}
        if self.details:
            node["details"] = self.details
        if self.time_measurement:
            node["time-measurement"] = self.time_measurement
        return node

    @classmethod
    def from_node(cls, node):
        return cls(_get(node, "vm-name"), _get(node, "status"),
                   _get(node, "details", None),
                   _get(node, "time-measurement", None))

    def __repr__(self):
        return "Result(%r, %r, %r)" % (self.vm_name, self.status, self.details)


class ResultContainer(object):

    """
    The results of all sub-tasks of a task, sent as one reply.

    :param title: Result format of the task type, e.g. "vm started".
    """

    def __init__(self, title, results=()):
        self.title = title
        self.results = list(results)

    def emit(self):
        return {"result": self.title,
                "list": [result.emit() for result in self.results]}

    def to_yaml(self):
        return dump(self.emit())

    @classmethod
    def from_yaml(cls, text):
        node = yaml.safe_load(text)
        return cls(_get(node, "result"),
                   [Result.from_node(item) for item in _get(node, "list", [])])


class SubTask(object):

    """
    One operation on one virtual machine.

    :param concurrent_execution: Run on an own thread as soon as the task is
                                 dispatched, instead of inline when its
                                 result is awaited.
    :param time_measurement: Report the duration of the phases.
    """

    def __init__(self, concurrent_execution=True, time_measurement=False):
        self.concurrent_execution = concurrent_execution
        self.time_measurement = time_measurement

    @property
    def name(self):
        """VM name reported in the result."""
        return getattr(self, "vm_name", None)

    def _load_common(self, node, defaults):
        self.concurrent_execution = _get(node, "concurrent-execution", True,
                                         _to_bool)
        self.time_measurement = _get(node, "time-measurement",
                                     defaults.get("time_measurement", False),
                                     _to_bool)

    def emit(self):
        node = {"concurrent-execution": self.concurrent_execution}
        if self.time_measurement:
            node["time-measurement"] = True
        return node

    def run(self, vmm, time_measurement):
        """
        Execute the operation.

        :param vmm: The :class:`migfra.vmm.VirtualMachinesManager`.
        :param time_measurement: The :class:`TimeMeasurement` to record in.
        :return: The name of the VM the operation was done on.
        """
        raise NotImplementedError


class StartVM(SubTask):

    def __init__(self, vm_name=None, xml=None, vcpus=None, memory=None,
                 pci_ids=(), check_remote=False, **kwargs):
        super(StartVM, self).__init__(**kwargs)
        self.vm_name = vm_name
        self.xml = xml
        self.vcpus = vcpus
        self.memory = memory
        self.pci_ids = list(pci_ids)
        self.check_remote = check_remote

    @classmethod
    def from_node(cls, node, **defaults):
        vm_name = _get(node, "vm-name", None, str)
        xml = _get(node, "xml", None, str)
        if vm_name is None and xml is None:
            raise MalformedRequestError("Missing required field \"vm-name\".")
        try:
            pci_ids = [PCIId.from_node(item)
                       for item in _get(node, "pci-ids", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedRequestError("Invalid value for \"pci-ids\": %s" %
                                        e)
        sub_task = cls(vm_name, xml,
                       _get(node, "vcpus", None, int),
                       _get(node, "memory", None, int),
                       pci_ids,
                       _get(node, "check-remote", False, _to_bool))
        sub_task._load_common(node, defaults)
        return sub_task

    def emit(self):
        node = super(StartVM, self).emit()
        if self.vm_name is not None:
            node["vm-name"] = self.vm_name
        if self.xml is not None:
            node["xml"] = self.xml
        if self.vcpus is not None:
            node["vcpus"] = self.vcpus
        if self.memory is not None:
            node["memory"] = self.memory
        if self.pci_ids:
            node["pci-ids"] = [pci_id.emit() for pci_id in self.pci_ids]
        if self.check_remote:
            node["check-remote"] = True
        return node

    def run(self, vmm, time_measurement):
        return vmm.start_instance(self.vm_name, self.xml, self.vcpus,
                                  self.memory, self.pci_ids,
                                  self.check_remote, time_measurement)


class StopVM(SubTask):

    def __init__(self, vm_name, force=False, **kwargs):
        super(StopVM, self).__init__(**kwargs)
        self.vm_name = vm_name
        self.force = force

    @classmethod
    def from_node(cls, node, **defaults):
        sub_task = cls(_get(node, "vm-name", convert=str),
                       _get(node, "force", False, _to_bool))
        sub_task._load_common(node, defaults)
        return sub_task

    def emit(self):
        node = super(StopVM, self).emit()
        node["vm-name"] = self.vm_name
        node["force"] = self.force
        return node

    def run(self, vmm, time_measurement):
        vmm.stop_instance(self.vm_name, self.force, time_measurement)
        return self.vm_name


class MigrateVM(SubTask):

    def __init__(self, vm_name, destination, live_migration=True,
                 rdma_migration=False, driver=None, transport=None,
                 pscom_hook_procs=0, memory_ballooning=False, **kwargs):
        super(MigrateVM, self).__init__(**kwargs)
        self.vm_name = vm_name
        self.destination = destination
        self.live_migration = live_migration
        self.rdma_migration = rdma_migration
        self.driver = driver
        self.transport = transport
        self.pscom_hook_procs = pscom_hook_procs
        self.memory_ballooning = memory_ballooning

    @classmethod
    def from_node(cls, node, **defaults):
        parameter = _get(node, "parameter", {})
        if not isinstance(parameter, dict):
            raise MalformedRequestError("Invalid value for \"parameter\": %r"
                                        % parameter)
        sub_task = cls(_get(node, "vm-name", convert=str),
                       _get(node, "destination", convert=str),
                       _get(parameter, "live-migration", True, _to_bool),
                       _get(parameter, "rdma-migration", False, _to_bool),
                       _get(parameter, "driver", None, str),
                       _get(parameter, "transport", None, str),
                       _get(parameter, "pscom-hook-procs", 0, int),
                       _get(parameter, "memory-ballooning", False, _to_bool))
        if sub_task.pscom_hook_procs < 0:
            raise MalformedRequestError("Invalid value for "
                                        "\"pscom-hook-procs\": %s" %
                                        sub_task.pscom_hook_procs)
        sub_task._load_common(node, defaults)
        return sub_task

    def emit(self):
        node = super(MigrateVM, self).emit()
        node["vm-name"] = self.vm_name
        node["destination"] = self.destination
        parameter = {"live-migration": self.live_migration,
                     "rdma-migration": self.rdma_migration,
                     "pscom-hook-procs": self.pscom_hook_procs,
                     "memory-ballooning": self.memory_ballooning}
        if self.driver:
            parameter["driver"] = self.driver
        if self.transport:
            parameter["transport"] = self.transport
        node["parameter"] = parameter
        return node

    def run(self, vmm, time_measurement):
        vmm.migrate_instance(self.vm_name, self.destination,
                             live=self.live_migration,
                             rdma=self.rdma_migration,
                             driver=self.driver,
                             transport=self.transport,
                             pscom_hook_procs=self.pscom_hook_procs,
                             memory_ballooning=self.memory_ballooning,
                             time_measurement=time_measurement)
        return self.vm_name


class Quit(SubTask):

    @classmethod
    def from_node(cls, node, **defaults):
        return cls()

    def emit(self):
        return {}

    def run(self, vmm, time_measurement):
        raise QuitTaskExecutedError()


#: Task type, sub-task class, result format.
TASK_TYPES = (
    ("start vm", StartVM, "vm started"),
    ("stop vm", StopVM, "vm stopped"),
    ("migrate vm", MigrateVM, "vm migrated"),
    ("quit", Quit, "quit"),
)

_SUB_TASK_CLASSES = dict((kind, cls) for kind, cls, _ in TASK_TYPES)
_RESULT_FORMATS = dict((kind, title) for kind, _, title in TASK_TYPES)

# These two may be sent without vm-configurations, as a single sub-task.
_SINGLE_DOCUMENT_TYPES = ("migrate vm", "quit")


def _sub_task_class(kind):
    if not isinstance(kind, str) or kind not in _SUB_TASK_CLASSES:
        raise MalformedRequestError("Unknown type of Task while loading.")
    return _SUB_TASK_CLASSES[kind]


class Task(object):

    """
    Sub-tasks of one kind requested together, answered with one reply.

    :param kind: The task type, e.g. "start vm".
    :param sub_tasks: :class:`SubTask` instances matching kind.
    :param concurrent_execution: Run the whole task on an own thread.
    """

    def __init__(self, kind, sub_tasks=(), concurrent_execution=True):
        sub_task_cls = _sub_task_class(kind)
        self.kind = kind
        self.sub_tasks = list(sub_tasks)
        for sub_task in self.sub_tasks:
            if type(sub_task) is not sub_task_cls:
                raise MalformedRequestError(
                    "Sub-task %s does not belong to a \"%s\" task." %
                    (type(sub_task).__name__, kind))
        self.concurrent_execution = concurrent_execution

    def type(self, result_format=False):
        if result_format:
            return _RESULT_FORMATS[self.kind]
        return self.kind

    @property
    def is_quit(self):
        return self.kind == "quit"

    @classmethod
    def from_node(cls, node):
        if not isinstance(node, dict) or node.get("task") is None:
            raise NoTaskError("Cannot find key \"task\" to load Task from "
                              "YAML.")
        kind = node["task"]
        sub_task_cls = _sub_task_class(kind)
        defaults = {"time_measurement": _get(node, "time-measurement", False,
                                             _to_bool)}

        if "vm-configurations" in node:
            items = node["vm-configurations"] or []
            if not isinstance(items, list):
                raise MalformedRequestError(
                    "Invalid value for \"vm-configurations\": %r" % items)
        elif kind in _SINGLE_DOCUMENT_TYPES:
            items = [node]
        else:
            items = []

        sub_tasks = [sub_task_cls.from_node(item, **defaults)
                     for item in items]
        return cls(kind, sub_tasks,
                   _get(node, "concurrent-execution", True, _to_bool))

    @classmethod
    def from_yaml(cls, text):
        try:
            node = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise MalformedRequestError("Cannot parse request: %s" % e)
        return cls.from_node(node)

    def emit(self):
        return {"task": self.kind,
                "concurrent-execution": self.concurrent_execution,
                "vm-configurations": [sub_task.emit()
                                      for sub_task in self.sub_tasks]}

    def to_yaml(self):
        return dump(self.emit())

    def __len__(self):
        return len(self.sub_tasks)
