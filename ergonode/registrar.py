"""Registry of a node's processes, names, aliases, peers and behaviours; routes messages."""

from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from ergonode.monitor import Monitor
from ergonode.process import Process
from ergonode.types import (
    DEFAULT_SEND_QUEUE_LENGTH,
    Alias,
    AliasOwner,
    AliasUnknown,
    Atom,
    BehaviorGroupUnknown,
    BehaviorUnknown,
    DistProto,
    MailboxMessage,
    NameUnknown,
    NodeError,
    Pid,
    ProcessBusy,
    ProcessID,
    ProcessInfo,
    ProcessOptions,
    ProcessUnknown,
    Ref,
    RegisteredBehavior,
    Taken,
)

log = logging.getLogger(__name__)

START_PID = 1000
NODE_ENV_KEY = "ergo:Node"
REASON_PANIC = "panic"
_REF_LOW_MASK = (2 << 17) - 1


@dataclass
class Peer:
    """A connected remote node and the queue of packets waiting to be written to it."""

    name: str
    send: queue.Queue = field(
        default_factory=lambda: queue.Queue(maxsize=DEFAULT_SEND_QUEUE_LENGTH)
    )


class Registrar(Monitor):
    """Keeps every process of a node reachable by pid, name and alias.

    ``connect`` is called with a node name when a message has to go to a
    node without a registered peer; it is expected to register one.
    """

    def __init__(
        self,
        node_name: str,
        creation: int,
        node: Any = None,
        connect: Callable[[str], None] | None = None,
    ) -> None:
        super().__init__(self)
        self.node_name = node_name
        self.creation = creation
        self.node = node
        self.connect = connect
        self._counter_lock = threading.Lock()
        self._pid_counter = itertools.count(START_PID + 1)
        self._uniq_id = itertools.count(time.time_ns() + 1)
        self._names: dict[str, Pid] = {}
        self._names_lock = threading.RLock()
        self._aliases: dict[Alias, Process] = {}
        self._aliases_lock = threading.RLock()
        self._table: dict[int, Process] = {}
        self._table_lock = threading.RLock()
        self._peers: dict[str, Peer] = {}
        self._peers_lock = threading.RLock()
        self._behaviors: dict[str, dict[str, RegisteredBehavior]] = {}
        self._behaviors_lock = threading.RLock()

    # identifiers

    def new_pid(self) -> Pid:
        with self._counter_lock:
            number = next(self._pid_counter)
        return Pid(node=Atom(self.node_name), id=number, creation=self.creation)

    def make_ref(self) -> Ref:
        """Return a reference unique within this node."""
        with self._counter_lock:
            nt = next(self._uniq_id)
        return Ref(
            node=Atom(self.node_name),
            creation=self.creation,
            id=(nt & _REF_LOW_MASK, (nt >> 46) & 0xFFFFFFFF, 0),
        )

    # aliases

    def is_alias(self, alias: Alias) -> bool:
        with self._aliases_lock:
            return alias in self._aliases

    def new_alias(self, process: Process) -> Alias:
        with self._table_lock:
            if process.pid.id not in self._table:
                raise ProcessUnknown()
        ref = self.make_ref()
        alias = Alias(node=ref.node, creation=ref.creation, id=ref.id)
        log.debug("[%s] create process alias for %s: %s", self.node_name, process.pid, alias)
        with self._aliases_lock:
            self._aliases[alias] = process
        process.aliases.append(alias)
        return alias

    def delete_alias(self, owner: Process, alias: Alias) -> None:
        """Remove an alias; only the process owning it may do so."""
        log.debug("[%s] delete process alias %s for %s", self.node_name, alias, owner.pid)
        with self._aliases_lock:
            holder = self._aliases.get(alias)
        if holder is None:
            raise AliasUnknown()
        with self._table_lock:
            if owner.pid.id not in self._table:
                raise ProcessUnknown()
        if holder.pid != owner.pid:
            raise AliasOwner()
        with self._aliases_lock:
            self._aliases.pop(alias, None)
        if alias in holder.aliases:
            holder.aliases.remove(alias)
            return
        log.warning("[%s] process %s lost its alias %s", self.node_name, holder.pid, alias)
        raise AliasUnknown()

    # processes

    def _new_process(self, name: str, behavior: Any, opts: ProcessOptions) -> Process:
        pid = self.new_pid()
        env = dict(opts.env or {})
        if self.node is not None:
            env[NODE_ENV_KEY] = self.node
        process = Process(
            self,
            pid,
            name=name,
            behavior=behavior,
            env=env,
            parent=opts.parent,
            group_leader=opts.group_leader,
            mailbox_size=opts.mailbox_size,
        )
        if name:
            log.debug("[%s] registering name (%s): %s", self.node_name, pid, name)
            with self._names_lock:
                if name in self._names:
                    raise Taken()
                self._names[name] = pid
        log.debug("[%s] registering process: %s", self.node_name, pid)
        with self._table_lock:
            self._table[pid.id] = process
        return process

    def _delete_process(self, pid: Pid) -> None:
        with self._table_lock:
            process = self._table.pop(pid.id, None)
        if process is None:
            return
        log.debug("[%s] unregistering process: %s", self.node_name, pid)
        with self._names_lock:
            for name in [n for n, owner in self._names.items() if owner == process.pid]:
                del self._names[name]
            if process.name and self._names.get(process.name) == process.pid:
                del self._names[process.name]
        with self._aliases_lock:
            for alias in [a for a, p in self._aliases.items() if p is process]:
                del self._aliases[alias]

    def spawn(self, name: str, opts: ProcessOptions | None, behavior: Any, *args: Any) -> Process:
        """Start a process running ``behavior``; return once its loop has started."""
        options = opts if opts is not None else ProcessOptions()
        process = self._new_process(name, behavior, options)
        try:
            state = behavior.process_init(process, *args)
        except Exception:
            log.warning("[%s] initialization of %s[%r] failed", self.node_name, process.pid, name)
            self._delete_process(process.pid)
            process._cleanup()
            raise

        started = threading.Event()
        thread = threading.Thread(
            target=self._run,
            args=(process, name, behavior, state, started),
            name=f"process-{process.pid}",
            daemon=True,
        )
        thread.start()
        started.wait()
        return process

    def _run(self, process: Process, name: str, behavior: Any, state: Any, started: threading.Event) -> None:
        reason = REASON_PANIC
        try:
            reason = behavior.process_loop(state, started)
        except Exception:
            log.warning("[%s] process terminated %s[%r]", self.node_name, process.pid, name, exc_info=True)
            reason = REASON_PANIC
        finally:
            started.set()
            self._clean_process(process, name, reason)

    def _clean_process(self, process: Process, name: str, reason: str) -> None:
        process.graceful_exit = None
        self._delete_process(process.pid)
        process.stopped.set()
        self.process_terminated(process.pid, name, reason)
        process._cleanup()

    def kill_all(self) -> None:
        """Stop every process of this node."""
        for process in self.process_list():
            process.stopped.set()

    # names

    def register_name(self, name: str, pid: Pid) -> None:
        log.debug("[%s] registering name %s", self.node_name, name)
        with self._names_lock:
            if name in self._names:
                raise Taken()
            self._names[name] = pid

    def unregister_name(self, name: str) -> None:
        log.debug("[%s] unregistering name %s", self.node_name, name)
        with self._names_lock:
            if name not in self._names:
                raise NameUnknown()
            del self._names[name]

    # peers

    def register_peer(self, peer: Peer) -> None:
        log.debug("[%s] registering peer %r", self.node_name, peer.name)
        with self._peers_lock:
            if peer.name in self._peers:
                raise Taken()
            self._peers[peer.name] = peer

    def unregister_peer(self, name: str) -> None:
        """Forget a peer and notify everything that depended on its node."""
        log.debug("[%s] unregistering peer %s", self.node_name, name)
        with self._peers_lock:
            peer = self._peers.pop(name, None)
        if peer is not None:
            self.node_down(name)

    def peer_list(self) -> list[str]:
        with self._peers_lock:
            return list(self._peers)

    # behaviours

    def register_behavior(self, group: str, name: str, behavior: Any, data: Any) -> None:
        log.debug("[%s] registering behavior %r in group %r", self.node_name, name, group)
        with self._behaviors_lock:
            members = self._behaviors.setdefault(group, {})
            if name in members:
                raise Taken()
            members[name] = RegisteredBehavior(behavior=behavior, data=data)

    def registered_behavior(self, group: str, name: str) -> RegisteredBehavior:
        with self._behaviors_lock:
            members = self._behaviors.get(group)
            if members is None:
                raise BehaviorGroupUnknown()
            registered = members.get(name)
            if registered is None:
                raise BehaviorUnknown()
            return registered

    def registered_behavior_group(self, group: str) -> list[RegisteredBehavior]:
        with self._behaviors_lock:
            return list(self._behaviors.get(group, {}).values())

    def unregister_behavior(self, group: str, name: str) -> None:
        log.debug("[%s] unregistering behavior %s in group %s", self.node_name, name, group)
        with self._behaviors_lock:
            members = self._behaviors.get(group)
            if members is None:
                raise BehaviorUnknown()
            members.pop(name, None)
            if not members:
                del self._behaviors[group]

    # lookups

    def is_process_alive(self, process: Any) -> bool:
        found = self.process_by_pid(process.pid)
        return found is not None and found.is_alive()

    def process_info(self, pid: Pid) -> ProcessInfo:
        process = self.process_by_pid(pid)
        if process is None:
            raise ProcessUnknown("undefined")
        return process.info()

    def process_by_pid(self, pid: Pid) -> Process | None:
        with self._table_lock:
            return self._table.get(pid.id)

    def process_by_alias(self, alias: Alias) -> Process | None:
        with self._aliases_lock:
            return self._aliases.get(alias)

    def process_by_name(self, name: str) -> Process | None:
        if not name:
            return None
        with self._names_lock:
            pid = self._names.get(name)
        if pid is None:
            return None
        return self.process_by_pid(pid)

    def process_list(self) -> list[Process]:
        with self._table_lock:
            return list(self._table.values())

    # routing

    def _peer_for(self, node: str) -> Peer:
        with self._peers_lock:
            peer = self._peers.get(node)
        if peer is not None:
            return peer
        if self.connect is None:
            raise NodeError(f"no network to reach {node}")
        self.connect(node)
        with self._peers_lock:
            peer = self._peers.get(node)
        if peer is None:
            raise NodeError(f"no connection with {node}")
        return peer

    def _remote_peer(self, node: str) -> Peer:
        try:
            return self._peer_for(node)
        except (NodeError, OSError, ValueError) as exc:
            log.debug("[%s] Can't connect to %s: %s", self.node_name, node, exc)
            raise NodeError(f"Can't connect to {node}: {exc}") from exc

    def _deliver_local(self, sender: Pid, pid: Pid, message: Any) -> None:
        process = self.process_by_pid(pid)
        mailbox = process.mailbox if process is not None else None
        if mailbox is None:
            raise ProcessUnknown()
        try:
            mailbox.put_nowait(MailboxMessage(sender, message))
        except queue.Full:
            raise ProcessBusy(
                f"mailbox of {pid} is full. dropped message from {sender}"
            ) from None

    def route(self, sender: Pid, to: Any, message: Any) -> None:
        """Deliver a message to a pid, registered name, ProcessID or alias."""
        if isinstance(to, Pid):
            if str(to.node) == self.node_name:
                self._deliver_local(sender, to, message)
                return
            peer = self._remote_peer(str(to.node))
            peer.send.put([(DistProto.SEND, Atom(""), to), message])
            return

        if isinstance(to, ProcessID):
            if to.node == self.node_name:
                self.route(sender, to.name, message)
                return
            peer = self._remote_peer(to.node)
            peer.send.put(
                [(DistProto.REG_SEND, sender, Atom(""), Atom(to.name)), message]
            )
            return

        if isinstance(to, Alias):
            if str(to.node) == self.node_name:
                owner = self.process_by_alias(to)
                if owner is None:
                    raise AliasUnknown()
                self._deliver_local(sender, owner.pid, message)
                return
            peer = self._remote_peer(str(to.node))
            peer.send.put([(DistProto.ALIAS_SEND, sender, to), message])
            return

        if isinstance(to, str):
            with self._names_lock:
                pid = self._names.get(str(to))
            if pid is None:
                log.debug("[%s] no process registered as %r", self.node_name, to)
                return
            self.route(sender, pid, message)
            return

        log.debug("[%s] unsupported receiver type %r", self.node_name, to)
        raise NodeError(f"unsupported receiver type {to!r}")

    def route_raw(self, nodename: Atom, *args: Any) -> None:
        """Queue raw distribution packets for a remote node."""
        if not args:
            raise NodeError("nothing to send")
        peer = self._peer_for(str(nodename))
        peer.send.put(list(args))