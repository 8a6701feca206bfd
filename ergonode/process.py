"""A running process: its mailbox, environment, aliases and synchronous requests."""

from __future__ import annotations

import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Callable, Protocol

from ergonode.types import (
    Alias,
    Atom,
    DistProto,
    GracefulExitRequest,
    NameOwner,
    NameUnknown,
    NodeError,
    NodeTimeout,
    Pid,
    ProcessBusy,
    ProcessInfo,
    ProcessOptions,
    ProcessTerminated,
    ProcessUnknown,
    ProcessID,
    Ref,
    Taken,
)

log = logging.getLogger(__name__)

DEFAULT_PROCESS_MAILBOX_SIZE = 100
DEFAULT_CALL_TIMEOUT = 5
_POLL_INTERVAL = 0.05


class ProcessHost(Protocol):
    """What a process needs from the node that runs it."""

    node_name: str

    def register_name(self, name: str, pid: Pid) -> None: ...

    def unregister_name(self, name: str) -> None: ...

    def process_by_name(self, name: str) -> Any: ...

    def make_ref(self) -> Ref: ...

    def route(self, sender: Pid, to: Any, message: Any) -> None: ...

    def route_raw(self, nodename: Atom, *args: Any) -> None: ...

    def new_alias(self, process: Process) -> Alias: ...

    def delete_alias(self, owner: Process, alias: Alias) -> None: ...

    def spawn(self, name: str, opts: ProcessOptions, behavior: Any, *args: Any) -> Any: ...

    def link(self, pid_a: Pid, pid_b: Pid) -> None: ...

    def unlink(self, pid_a: Pid, pid_b: Pid) -> None: ...

    def monitor_process(self, by: Pid, process: Any, ref: Ref) -> None: ...

    def demonitor_process(self, ref: Ref) -> bool: ...

    def monitor_node(self, by: Pid, node: str) -> Ref: ...

    def demonitor_node(self, ref: Ref) -> bool: ...

    def process_links(self, process: Pid) -> list[Pid]: ...

    def process_monitors(self, process: Pid) -> list[Pid]: ...

    def process_monitors_by_name(self, process: Pid) -> list[ProcessID]: ...

    def process_monitored_by(self, process: Pid) -> list[Pid]: ...


class ProcessBehavior(ABC):
    """The code a process runs."""

    @abstractmethod
    def process_init(self, process: Process, *args: Any) -> Any:
        """Prepare the process; return the state handed to ``process_loop``."""

    @abstractmethod
    def process_loop(self, state: Any, started: threading.Event) -> str:
        """Serve the process until it stops; set ``started`` once ready. Return the reason."""


@dataclass
class DirectMessage:
    """A direct request to a process, or the response to one."""

    message: Any = None
    reply: queue.Queue | None = None
    error: BaseException | None = None


@dataclass(frozen=True)
class _DirectChildren:
    """Direct request asking a process for the pids of its children."""


DIRECT_CHILDREN = _DirectChildren()


class Process:
    """A process living on a node."""

    def __init__(
        self,
        host: ProcessHost,
        pid: Pid,
        name: str = "",
        behavior: Any = None,
        env: dict[str, Any] | None = None,
        parent: Process | None = None,
        group_leader: Any = None,
        mailbox_size: int = DEFAULT_PROCESS_MAILBOX_SIZE,
    ) -> None:
        size = mailbox_size if mailbox_size > 0 else DEFAULT_PROCESS_MAILBOX_SIZE
        self._host = host
        self._lock = threading.RLock()
        self.pid = pid
        self.name = name
        self.behavior = behavior
        self._env: dict[str, Any] | None = dict(env) if env else {}
        self.parent = parent
        self.group_leader = group_leader
        self.aliases: list[Alias] = []
        self.mailbox: queue.Queue | None = queue.Queue(maxsize=size)
        self.graceful_exit: queue.Queue | None = queue.Queue(maxsize=size)
        self.direct_queue: queue.Queue | None = queue.Queue(maxsize=1)
        self.stopped = threading.Event()
        self._reply_lock = threading.Lock()
        self._reply: dict[Ref, queue.Queue] | None = {}
        self.trap_exit = False

    def __repr__(self) -> str:
        return f"Process({self.pid}, name={self.name!r})"

    def _ensure_running(self) -> None:
        if self.behavior is None:
            raise ProcessTerminated()

    # names

    def register_name(self, name: str) -> None:
        self._ensure_running()
        self._host.register_name(name, self.pid)
        self.name = name

    def unregister_name(self, name: str) -> None:
        """Drop a name registered to this process."""
        self._ensure_running()
        owner = self._host.process_by_name(name)
        if owner is None:
            raise NameUnknown()
        if owner.pid != self.pid:
            raise NameOwner()
        self._host.unregister_name(name)

    # life cycle

    def kill(self) -> None:
        if self.behavior is None:
            return
        self.stopped.set()

    def exit(self, reason: str) -> None:
        """Ask this process to exit with the given reason."""
        self._ensure_running()
        self._exit(self.pid, reason)

    def _exit(self, sender: Pid, reason: str) -> None:
        log.debug("EXIT from %s to %s with reason: %s", sender, self.pid, reason)
        if self.stopped.is_set():
            raise ProcessUnknown()
        graceful = self.graceful_exit
        if graceful is None:
            raise ProcessBusy()
        try:
            graceful.put_nowait(GracefulExitRequest(sender, reason))
        except queue.Full:
            raise ProcessBusy() from None
        # unless exits are trapped the process is stopped right away
        if not self.trap_exit:
            self.stopped.set()

    def _cleanup(self) -> None:
        """Release everything a stopped process holds; pid and name are kept."""
        self.stopped.set()
        with self._lock:
            self.graceful_exit = None
            self.aliases = []
            self.behavior = None
            self.parent = None
            self.group_leader = None
            self.mailbox = None
            self.direct_queue = None
            self._env = None
        with self._reply_lock:
            self._reply = None

    def is_alive(self) -> bool:
        with self._lock:
            if self.behavior is None:
                return False
            return not self.stopped.is_set()

    def wait(self, timeout: float | None = None) -> None:
        """Block until the process stops; raise NodeTimeout if ``timeout`` passes first."""
        if not self.is_alive():
            return
        if not self.stopped.wait(timeout):
            raise NodeTimeout()

    # introspection

    def links(self) -> list[Pid]:
        return self._host.process_links(self.pid)

    def monitors(self) -> list[Pid]:
        return self._host.process_monitors(self.pid)

    def monitors_by_name(self) -> list[ProcessID]:
        return self._host.process_monitors_by_name(self.pid)

    def monitored_by(self) -> list[Pid]:
        return self._host.process_monitored_by(self.pid)

    def info(self) -> ProcessInfo:
        if self.behavior is None:
            return ProcessInfo()
        group_leader = self.group_leader.pid if self.group_leader is not None else self.pid
        mailbox = self.mailbox
        return ProcessInfo(
            pid=self.pid,
            name=self.name,
            group_leader=group_leader,
            links=self.links(),
            monitors=self.monitors(),
            monitors_by_name=self.monitors_by_name(),
            monitored_by=self.monitored_by(),
            aliases=list(self.aliases),
            status="running",
            message_queue_len=mailbox.qsize() if mailbox is not None else 0,
            trap_exit=self.trap_exit,
        )

    # messaging

    def send(self, to: Any, message: Any) -> None:
        self._ensure_running()
        self._host.route(self.pid, to, message)

    def send_after(self, to: Any, message: Any, after: float) -> Callable[[], None]:
        """Send a message after ``after`` seconds; return a function that cancels it."""

        def fire() -> None:
            if not self.is_alive():
                return
            try:
                self._host.route(self.pid, to, message)
            except (NodeError, OSError) as exc:
                log.debug("delayed send from %s failed: %s", self.pid, exc)

        timer = threading.Timer(after, fire)
        timer.daemon = True
        timer.start()
        return timer.cancel

    # aliases

    def create_alias(self) -> Alias:
        self._ensure_running()
        return self._host.new_alias(self)

    def delete_alias(self, alias: Alias) -> None:
        self._ensure_running()
        self._host.delete_alias(self, alias)

    # environment

    def list_env(self) -> dict[str, Any]:
        """Environment inherited from the group leader and parent, overlaid by our own."""
        with self._lock:
            env: dict[str, Any] = {}
            if self.group_leader is not None:
                env.update(self.group_leader.list_env())
            if self.parent is not None:
                env.update(self.parent.list_env())
            env.update(self._env or {})
            return env

    def set_env(self, name: str, value: Any) -> None:
        """Set a variable; a value of None removes it."""
        with self._lock:
            if self._env is None:
                raise ProcessTerminated()
            if value is None:
                self._env.pop(name, None)
            else:
                self._env[name] = value

    def env(self, name: str) -> Any:
        with self._lock:
            own = self._env or {}
            if name in own:
                return own[name]
            if self.group_leader is not None:
                return self.group_leader.env(name)
            return None

    # links and monitors

    def link(self, with_pid: Pid) -> None:
        if self.behavior is None:
            return
        self._host.link(self.pid, with_pid)

    def unlink(self, with_pid: Pid) -> None:
        with self._lock:
            if self.behavior is None:
                return
        self._host.unlink(self.pid, with_pid)

    def monitor_node(self, name: str) -> Ref:
        return self._host.monitor_node(self.pid, name)

    def demonitor_node(self, ref: Ref) -> bool:
        return self._host.demonitor_node(ref)

    def monitor_process(self, process: Any) -> Ref:
        """Monitor a pid, a registered name or a ProcessID; return the monitor reference."""
        ref = self._host.make_ref()
        self._host.monitor_process(self.pid, process, ref)
        return ref

    def demonitor_process(self, ref: Ref) -> bool:
        return self._host.demonitor_process(ref)

    # direct requests

    def children(self) -> list[Pid]:
        return list(self._direct_request(DIRECT_CHILDREN, DEFAULT_CALL_TIMEOUT))

    def direct(self, request: Any, timeout: int = DEFAULT_CALL_TIMEOUT) -> Any:
        """Hand a request straight to the process loop and wait for its answer."""
        if timeout < 1:
            timeout = DEFAULT_CALL_TIMEOUT
        return self._direct_request(request, timeout)

    def _direct_request(self, request: Any, timeout: float) -> Any:
        requests = self.direct_queue
        if requests is None:
            raise ProcessTerminated()
        message = DirectMessage(message=request, reply=queue.Queue(maxsize=1))
        try:
            requests.put(message, timeout=timeout)
        except queue.Full:
            raise ProcessBusy() from None
        try:
            response = message.reply.get(timeout=timeout)
        except queue.Empty:
            raise NodeTimeout() from None
        if response.error is not None:
            raise response.error
        return response.message

    # spawning

    def remote_spawn(
        self,
        node: str,
        obj: str,
        register_name: str = "",
        function: str = "",
        timeout: int = 0,
        monitor: Ref | None = None,
        link: bool = False,
        *args: Any,
    ) -> Pid:
        """Ask another node to spawn the behaviour it provides under ``obj``."""
        ref = self._host.make_ref()
        optlist = [(Atom("name"), Atom(register_name))] if register_name else []
        if timeout == 0:
            timeout = DEFAULT_CALL_TIMEOUT
        control = (
            DistProto.SPAWN_REQUEST,
            ref,
            self.pid,
            self.pid,
            (Atom(obj), Atom(function), len(args)),
            optlist,
        )
        self.send_sync_request_raw(ref, Atom(node), control, list(args))
        result = self.wait_sync_reply(ref, timeout)

        if isinstance(result, Pid):
            if monitor is not None and monitor != Ref():
                self._host.monitor_process(self.pid, result, monitor)
            if link:
                self.link(result)
            return result
        if isinstance(result, Atom):
            if str(result) == Taken.default_message:
                raise Taken()
            raise NodeError(str(result))
        raise NodeError(f"unknown result: {result!r}")

    def spawn(self, name: str, opts: ProcessOptions | None, behavior: Any, *args: Any) -> Any:
        """Spawn a child process of this one."""
        options = replace(opts if opts is not None else ProcessOptions(), parent=self)
        return self._host.spawn(name, options, behavior, *args)

    # synchronous requests

    def _expect_reply(self, ref: Ref) -> None:
        with self._reply_lock:
            if self._reply is None:
                raise ProcessTerminated()
            self._reply[ref] = queue.Queue()

    def send_sync_request_raw(self, ref: Ref, node: Atom, *args: Any) -> None:
        self._expect_reply(ref)
        self._host.route_raw(node, *args)

    def send_sync_request(self, ref: Ref, to: Any, message: Any) -> None:
        self._expect_reply(ref)
        self.send(to, message)

    def put_sync_reply(self, ref: Ref, reply: Any) -> None:
        """Deliver a reply; ignored if nobody waits for it."""
        with self._reply_lock:
            if self._reply is None:
                raise ProcessTerminated()
            waiting = self._reply.get(ref)
        if waiting is not None:
            waiting.put(reply)

    def wait_sync_reply(self, ref: Ref, timeout: float) -> Any:
        with self._reply_lock:
            waiting = (self._reply or {}).get(ref)
        if waiting is None:
            raise NodeError("Unknown request")
        try:
            deadline = time.monotonic() + timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise NodeTimeout()
                try:
                    return waiting.get(timeout=min(remaining, _POLL_INTERVAL))
                except queue.Empty:
                    if self.stopped.is_set():
                        raise ProcessTerminated() from None
        finally:
            with self._reply_lock:
                if self._reply is not None:
                    self._reply.pop(ref, None)