"""Process and node monitors, and links between processes."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Protocol

from ergonode.types import (
    Atom,
    DistProto,
    MessageDown,
    MessageNodeDown,
    NodeError,
    Pid,
    ProcessID,
    Ref,
)

log = logging.getLogger(__name__)

VIRTUAL_PID_ID = 2**64 - 1
VIRTUAL_PID_CREATION = 2**32 - 1
_SEPARATOR = "|"

REASON_NOPROC = "noproc"
REASON_NOCONNECTION = "noconnection"

_ROUTE_ERRORS = (NodeError, OSError, ValueError)


class MonitorHost(Protocol):
    """What a monitor needs from the node it belongs to.

    Processes returned by ``process_by_pid`` provide ``is_alive()`` and
    ``_exit(sender, reason)``.
    """

    node_name: str

    def process_by_pid(self, pid: Pid) -> Any: ...

    def process_by_name(self, name: str) -> Any: ...

    def make_ref(self) -> Ref: ...

    def route(self, sender: Pid, to: Any, message: Any) -> None: ...

    def route_raw(self, nodename: Atom, *args: Any) -> None: ...


def virtual_pid(process_id: ProcessID) -> Pid:
    """Return the placeholder pid standing for a process monitored by its name."""
    return Pid(
        node=Atom(process_id.name + _SEPARATOR + process_id.node),
        id=VIRTUAL_PID_ID,
        creation=VIRTUAL_PID_CREATION,
    )


def virtual_pid_to_process_id(pid: Pid) -> ProcessID:
    """Recover the registered name and node a virtual pid was made from."""
    parts = str(pid.node).split(_SEPARATOR)
    if len(parts) != 2:
        return ProcessID()
    return ProcessID(parts[0], parts[1])


def is_virtual_pid(pid: Pid) -> bool:
    return pid.id == VIRTUAL_PID_ID and pid.creation == VIRTUAL_PID_CREATION


@dataclass(frozen=True)
class MonitorItem:
    pid: Pid
    ref: Ref


class Monitor:
    """Bookkeeping of monitors and links; sends the notifications they cause."""

    def __init__(self, host: MonitorHost) -> None:
        self._host = host
        self._processes: dict[Pid, list[MonitorItem]] = {}
        self._ref2pid: dict[Ref, Pid] = {}
        self._links: dict[Pid, list[Pid]] = {}
        self._nodes: dict[str, list[MonitorItem]] = {}
        self._ref2node: dict[Ref, str] = {}
        self._processes_lock = threading.RLock()
        self._links_lock = threading.RLock()
        self._nodes_lock = threading.RLock()

    @property
    def _local(self) -> Atom:
        return Atom(self._host.node_name)

    def _send_raw(self, node: str, *messages: Any) -> bool:
        try:
            self._host.route_raw(Atom(node), *messages)
        except _ROUTE_ERRORS as exc:
            log.debug("[%s] can't reach %s: %s", self._host.node_name, node, exc)
            return False
        return True

    def _deliver(self, sender: Pid, to: Pid, message: Any) -> None:
        try:
            self._host.route(sender, to, message)
        except _ROUTE_ERRORS as exc:
            log.debug("[%s] can't deliver to %s: %s", self._host.node_name, to, exc)

    # process monitors

    def monitor_process(self, by: Pid, process: Any, ref: Ref) -> None:
        """Make ``by`` monitor a pid, a local name, or a ProcessID."""
        if by.node != ref.node:
            log.debug("[%s] Incorrect monitor request by %s and %s", self._host.node_name, by, ref)
            return
        local = self._local

        if isinstance(process, ProcessID):
            vpid = virtual_pid(process)
            if process.node == local:
                if self._host.process_by_name(process.name) is None:
                    self._notify_process_terminated(ref, by, vpid, REASON_NOPROC)
                    return
            else:
                message = (DistProto.MONITOR, by, Atom(process.name), ref)
                if not self._send_raw(process.node, message):
                    self._notify_process_terminated(ref, by, vpid, REASON_NOCONNECTION)
                    return
            # a local entry on the virtual pid handles the nodedown event
            self._monitor_pid(by, vpid, ref)
            return

        if isinstance(process, str):
            vpid = virtual_pid(ProcessID(str(process), local))
            if self._host.process_by_name(str(process)) is None:
                self._notify_process_terminated(ref, by, vpid, REASON_NOPROC)
                return
            self._monitor_pid(by, vpid, ref)
            return

        if isinstance(process, Pid):
            self._monitor_pid(by, process, ref)
            return

        log.debug("[%s] unsupported monitor target %r", self._host.node_name, process)

    def _monitor_pid(self, by: Pid, target: Pid, ref: Ref) -> None:
        local = self._local
        log.debug("[%s] MONITOR process: %s => %s", local, by, target)
        if target.node == local and self._host.process_by_pid(target) is None:
            self._notify_process_terminated(ref, by, target, REASON_NOPROC)
            return

        with self._processes_lock:
            self._processes.setdefault(target, []).append(MonitorItem(by, ref))
            self._ref2pid[ref] = target

        if is_virtual_pid(target) or target.node == local:
            return

        if not self._send_raw(target.node, (DistProto.MONITOR, by, target, ref)):
            self._notify_process_terminated(ref, by, target, REASON_NOCONNECTION)
            with self._processes_lock:
                self._ref2pid.pop(ref, None)

    def demonitor_process(self, ref: Ref) -> bool:
        """Remove a process monitor; False if the reference is unknown."""
        with self._processes_lock:
            pid = self._ref2pid.get(ref)
            if pid is None:
                return False
            items = self._processes.get(pid, [])
            for item in items:
                if item.ref != ref:
                    continue
                target: Any = pid
                node = str(pid.node)
                if is_virtual_pid(pid):
                    process_id = virtual_pid_to_process_id(pid)
                    target = Atom(process_id.name)
                    node = process_id.node
                if node != self._host.node_name:
                    self._send_raw(node, (DistProto.DEMONITOR, item.pid, target, ref))
                items = [other for other in items if other is not item]
                del self._ref2pid[ref]
                break
            if items:
                self._processes[pid] = items
            else:
                self._processes.pop(pid, None)
            return True

    # links

    def link(self, pid_a: Pid, pid_b: Pid) -> None:
        """Link two processes; repeated links and links to oneself do nothing."""
        log.debug("[%s] LINK process: %s => %s", self._host.node_name, pid_a, pid_b)
        if pid_a == pid_b:
            return
        local = self._local
        with self._links_lock:
            links_a = list(self._links.get(pid_a, []))
            if pid_a.node == local:
                if pid_b in links_a:
                    return
                self._links[pid_a] = links_a + [pid_b]

            links_b = self._links.get(pid_b, [])
            if pid_a in links_b:
                return

            if pid_b.node == local:
                failure = None if self._host.process_by_pid(pid_b) is not None else REASON_NOPROC
            else:
                reached = self._send_raw(pid_b.node, (DistProto.LINK, pid_a, pid_b))
                failure = None if reached else REASON_NOCONNECTION

            if failure is not None:
                self._notify_process_exit(pid_a, pid_b, failure)
                if links_a:
                    self._links[pid_a] = links_a
                else:
                    self._links.pop(pid_a, None)
                return

            self._links[pid_b] = links_b + [pid_a]

    def unlink(self, pid_a: Pid, pid_b: Pid) -> None:
        local = self._local
        with self._links_lock:
            if pid_b.node != local:
                self._send_raw(pid_b.node, (DistProto.UNLINK, pid_a, pid_b))
            if pid_a.node == local:
                self._drop_link(pid_a, pid_b)
            self._drop_link(pid_b, pid_a)

    def _drop_link(self, owner: Pid, other: Pid) -> None:
        links = self._links.get(owner)
        if links is None or other not in links:
            return
        links = list(links)
        links.remove(other)
        if links:
            self._links[owner] = links
        else:
            del self._links[owner]

    # node monitors

    def monitor_node(self, by: Pid, node: str) -> Ref:
        log.debug("[%s] MONITOR NODE : %s => %s", self._host.node_name, by, node)
        ref = self._host.make_ref()
        with self._nodes_lock:
            self._nodes.setdefault(node, []).append(MonitorItem(by, ref))
            self._ref2node[ref] = node
        return ref

    def demonitor_node(self, ref: Ref) -> bool:
        with self._nodes_lock:
            name = self._ref2node.get(ref)
            if name is None:
                return False
            items = self._nodes.get(name, [])
            for item in items:
                if item.ref != ref:
                    continue
                items = [other for other in items if other is not item]
                with self._processes_lock:
                    self._ref2pid.pop(ref, None)
                break
            self._nodes[name] = items
            del self._ref2node[ref]
            return True

    def node_down(self, name: str) -> None:
        """Notify everything that watched or was linked to the given node."""
        log.debug("[%s] MONITOR NODE down: %s", self._host.node_name, name)

        with self._nodes_lock:
            for item in self._nodes.pop(name, []):
                self._notify_node_down(item.pid, name)

        with self._processes_lock:
            for pid, items in list(self._processes.items()):
                if is_virtual_pid(pid):
                    if virtual_pid_to_process_id(pid).node != name:
                        continue
                elif pid.node != name:
                    continue
                for item in items:
                    self._notify_process_terminated(item.ref, item.pid, pid, REASON_NOCONNECTION)
                    self._ref2pid.pop(item.ref, None)
                del self._processes[pid]

        with self._links_lock:
            for link, pids in list(self._links.items()):
                if link.node != name:
                    continue
                for pid in pids:
                    self._notify_process_exit(pid, link, REASON_NOCONNECTION)
                    remaining = self._links.get(pid)
                    if remaining is None:
                        continue
                    remaining = [other for other in remaining if other.node != name]
                    if remaining:
                        self._links[pid] = remaining
                    else:
                        del self._links[pid]
                self._links.pop(link, None)

    def process_terminated(self, terminated: Pid, name: str, reason: str) -> None:
        """Notify monitors and linked processes that a process has ended."""
        log.debug("[%s] MONITOR process terminated: %s", self._host.node_name, terminated)

        with self._processes_lock:
            if name:
                vpid = virtual_pid(ProcessID(name, self._host.node_name))
                if vpid in self._processes:
                    self._handle_monitors(vpid, reason)
            if terminated in self._processes:
                self._handle_monitors(terminated, reason)

        with self._links_lock:
            linked = self._links.pop(terminated, None)
            for pid in linked or []:
                self._notify_process_exit(pid, terminated, reason)
                self._drop_link(pid, terminated)

    def _handle_monitors(self, terminated: Pid, reason: str) -> None:
        for item in self._processes.pop(terminated):
            self._notify_process_terminated(item.ref, item.pid, terminated, reason)
            self._ref2pid.pop(item.ref, None)

    # queries

    def process_links(self, process: Pid) -> list[Pid]:
        with self._links_lock:
            return list(self._links.get(process, []))

    def process_monitors(self, process: Pid) -> list[Pid]:
        """Pids the given process monitors."""
        with self._processes_lock:
            return [
                pid
                for pid, items in self._processes.items()
                if not is_virtual_pid(pid)
                for item in items
                if item.pid == process
            ]

    def process_monitors_by_name(self, process: Pid) -> list[ProcessID]:
        """Registered names the given process monitors."""
        with self._processes_lock:
            return [
                virtual_pid_to_process_id(pid)
                for pid, items in self._processes.items()
                if is_virtual_pid(pid)
                for item in items
                if item.pid == process
            ]

    def process_monitored_by(self, process: Pid) -> list[Pid]:
        """Pids of the processes monitoring the given one."""
        with self._processes_lock:
            return [item.pid for item in self._processes.get(process, [])]

    def is_monitor(self, ref: Ref) -> bool:
        with self._processes_lock:
            return ref in self._ref2pid

    # notifications

    def _notify_node_down(self, to: Pid, node: str) -> None:
        self._deliver(Pid(), to, MessageNodeDown(node))

    def _notify_process_terminated(self, ref: Ref, to: Pid, terminated: Pid, reason: str) -> None:
        if to.node != self._local:
            if reason == REASON_NOCONNECTION:
                return
            source: Any = terminated
            if is_virtual_pid(terminated):
                source = Atom(virtual_pid_to_process_id(terminated).name)
            self._send_raw(to.node, (DistProto.MONITOR_EXIT, source, to, ref, Atom(reason)))
            return

        if is_virtual_pid(terminated):
            down = MessageDown(
                ref=ref, process_id=virtual_pid_to_process_id(terminated), reason=reason
            )
        else:
            down = MessageDown(ref=ref, pid=terminated, reason=reason)
        self._deliver(terminated, to, down)

    def _notify_process_exit(self, to: Pid, terminated: Pid, reason: str) -> None:
        if to.node != self._local:
            if reason == REASON_NOCONNECTION:
                return
            self._send_raw(to.node, (DistProto.EXIT, terminated, to, Atom(reason)))
            return
        process = self._host.process_by_pid(to)
        if process is not None and process.is_alive():
            try:
                process._exit(terminated, reason)
            except NodeError as exc:
                log.debug("[%s] exit of %s failed: %s", self._host.node_name, to, exc)