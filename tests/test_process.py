import threading
import time

import pytest

from ergonode.process import (
    DIRECT_CHILDREN,
    DirectMessage,
    Process,
    ProcessBehavior,
)
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
    Ref,
    Taken,
)

NODE = "node@localhost"


class Idle(ProcessBehavior):
    def process_init(self, process, *args):
        return args

    def process_loop(self, state, started):
        started.set()
        return "normal"


class FakeHost:
    def __init__(self):
        self.node_name = NODE
        self.names = {}
        self.routed = []
        self.raw = []
        self.linked = []
        self.monitored = []
        self.spawned = []
        self.processes = {}
        self.spawn_result = None
        self._counter = 0

    def make_ref(self):
        self._counter += 1
        return Ref(Atom(NODE), 1, (self._counter, 0, 0))

    def register_name(self, name, pid):
        if name in self.names:
            raise Taken()
        self.names[name] = pid

    def unregister_name(self, name):
        del self.names[name]

    def process_by_name(self, name):
        pid = self.names.get(name)
        return self.processes.get(pid) if pid is not None else None

    def route(self, sender, to, message):
        self.routed.append((sender, to, message))

    def route_raw(self, nodename, *args):
        self.raw.append((nodename, args))
        control = args[0]
        if self.spawn_result is not None and control[0] == DistProto.SPAWN_REQUEST:
            sender = self.processes[control[2]]
            sender.put_sync_reply(control[1], self.spawn_result)

    def new_alias(self, process):
        alias = Alias(**vars(self.make_ref()))
        process.aliases.append(alias)
        return alias

    def delete_alias(self, owner, alias):
        owner.aliases.remove(alias)

    def spawn(self, name, opts, behavior, *args):
        self.spawned.append((name, opts, behavior, args))
        return name

    def link(self, a, b):
        self.linked.append(("link", a, b))

    def unlink(self, a, b):
        self.linked.append(("unlink", a, b))

    def monitor_process(self, by, process, ref):
        self.monitored.append((by, process, ref))

    def demonitor_process(self, ref):
        return any(item[2] == ref for item in self.monitored)

    def monitor_node(self, by, node):
        return self.make_ref()

    def demonitor_node(self, ref):
        return False

    def process_links(self, pid):
        return [b for kind, a, b in self.linked if kind == "link" and a == pid]

    def process_monitors(self, pid):
        return [p for by, p, _ in self.monitored if by == pid]

    def process_monitors_by_name(self, pid):
        return []

    def process_monitored_by(self, pid):
        return []


def make(host, number=1001, **kwargs):
    pid = Pid(Atom(NODE), number, 1)
    process = Process(host, pid, behavior=Idle(), **kwargs)
    host.processes[pid] = process
    return process


@pytest.fixture
def host():
    return FakeHost()


def serve_direct(process, handler):
    def loop():
        request = process.direct_queue.get(timeout=2)
        try:
            result = DirectMessage(message=handler(request.message))
        except NodeError as exc:
            result = DirectMessage(error=exc)
        request.reply.put(result)

    thread = threading.Thread(target=loop, daemon=True)
    thread.start()
    return thread


def test_register_name_sets_name(host):
    process = make(host)
    process.register_name("gs1")
    assert process.name == "gs1"
    assert host.names["gs1"] == process.pid


def test_register_duplicate_name_raises_taken(host):
    first, second = make(host), make(host, 1002)
    first.register_name("test")
    with pytest.raises(Taken):
        second.register_name("test")


def test_terminated_process_refuses_operations(host):
    process = make(host)
    process._cleanup()
    with pytest.raises(ProcessTerminated):
        process.register_name("x")
    with pytest.raises(ProcessTerminated):
        process.send(process.pid, "hi")
    with pytest.raises(ProcessTerminated):
        process.create_alias()
    assert process.is_alive() is False
    assert process.info() == ProcessInfo()


def test_unregister_name_checks_owner(host):
    owner, other = make(host), make(host, 1002)
    with pytest.raises(NameUnknown):
        owner.unregister_name("test")
    owner.register_name("test")
    with pytest.raises(NameOwner):
        other.unregister_name("test")
    owner.unregister_name("test")
    assert "test" not in host.names


def test_exit_with_trap_exit_keeps_process_alive(host):
    process = make(host)
    process.trap_exit = True
    process.exit("test trap")
    assert process.graceful_exit.get_nowait() == GracefulExitRequest(process.pid, "test trap")
    assert process.is_alive()


def test_exit_without_trap_stops_process(host):
    process = make(host)
    process.exit("test trap")
    assert not process.is_alive()
    with pytest.raises(ProcessUnknown):
        process._exit(process.pid, "again")


def test_exit_with_full_queue_is_busy(host):
    process = make(host, mailbox_size=1)
    process.trap_exit = True
    process.exit("first")
    with pytest.raises(ProcessBusy):
        process.exit("second")


def test_env_lookup_and_merge(host):
    leader = make(host, 1002, env={"a": 1, "b": 2})
    process = make(host, group_leader=leader, env={"b": 3})
    assert process.env("a") == 1
    assert process.env("b") == 3
    assert process.env("missing") is None
    assert process.list_env() == {"a": 1, "b": 3}
    process.set_env("c", "x")
    assert process.env("c") == "x"
    process.set_env("c", None)
    assert process.env("c") is None


def test_parent_env_is_inherited_in_listing(host):
    parent = make(host, 1002, env={"p": True})
    process = make(host, parent=parent)
    assert process.list_env() == {"p": True}


def test_direct_returns_loop_result(host):
    process = make(host)
    serve_direct(process, lambda message: ("echo", message))
    assert process.direct("hi") == ("echo", "hi")


def test_direct_raises_loop_error(host):
    process = make(host)
    serve_direct(process, lambda message: (_ for _ in ()).throw(NodeError("unsupported")))
    with pytest.raises(NodeError, match="unsupported"):
        process.direct("hi")


def test_direct_times_out_without_loop(host):
    process = make(host)
    with pytest.raises(NodeTimeout):
        process.direct("hi", 1)


def test_children_uses_direct_request(host):
    process = make(host)
    child = Pid(Atom(NODE), 2000, 1)
    serve_direct(process, lambda message: [child] if message == DIRECT_CHILDREN else [])
    assert process.children() == [child]


def test_sync_reply_round_trip(host):
    process = make(host)
    ref = host.make_ref()
    process.send_sync_request_raw(ref, Atom("other@localhost"), "control", "payload")
    assert host.raw == [(Atom("other@localhost"), ("control", "payload"))]
    process.put_sync_reply(ref, "answer")
    assert process.wait_sync_reply(ref, 1) == "answer"
    with pytest.raises(NodeError, match="Unknown request"):
        process.wait_sync_reply(ref, 1)


def test_send_sync_request_routes_message(host):
    process = make(host)
    ref = host.make_ref()
    process.send_sync_request(ref, "gs2", "ping")
    assert host.routed == [(process.pid, "gs2", "ping")]


def test_wait_sync_reply_timeout(host):
    process = make(host)
    ref = host.make_ref()
    process.send_sync_request(ref, "gs2", "ping")
    with pytest.raises(NodeTimeout):
        process.wait_sync_reply(ref, 0.2)


def test_wait_sync_reply_aborts_when_killed(host):
    process = make(host)
    ref = host.make_ref()
    process.send_sync_request(ref, "gs2", "ping")
    threading.Timer(0.1, process.kill).start()
    with pytest.raises(ProcessTerminated):
        process.wait_sync_reply(ref, 2)


def test_put_sync_reply_after_cleanup_raises(host):
    process = make(host)
    process._cleanup()
    with pytest.raises(ProcessTerminated):
        process.put_sync_reply(host.make_ref(), "late")


def test_remote_spawn_returns_pid_and_links(host):
    process = make(host)
    remote = Pid(Atom("node2@localhost"), 1005, 1)
    host.spawn_result = remote
    result = process.remote_spawn("node2@localhost", "remote", "remote", "", 0, None, True, 1, 2, 3)
    assert result == remote
    nodename, (control, payload) = host.raw[0]
    assert nodename == Atom("node2@localhost")
    assert control[0] == DistProto.SPAWN_REQUEST
    assert control[4] == (Atom("remote"), Atom(""), 3)
    assert control[5] == [(Atom("name"), Atom("remote"))]
    assert payload == [1, 2, 3]
    assert ("link", process.pid, remote) in host.linked


def test_remote_spawn_taken(host):
    process = make(host)
    host.spawn_result = Atom("Resource is taken")
    with pytest.raises(Taken):
        process.remote_spawn("node2@localhost", "remote", "remote")


def test_remote_spawn_other_failure(host):
    process = make(host)
    host.spawn_result = Atom("not_provided")
    with pytest.raises(NodeError, match="not_provided"):
        process.remote_spawn("node2@localhost", "remote")


def test_info_reports_state(host):
    process = make(host)
    process.register_name("gs1")
    process.mailbox.put_nowait("queued")
    info = process.info()
    assert info.pid == process.pid
    assert info.name == "gs1"
    assert info.group_leader == process.pid
    assert info.status == "running"
    assert info.message_queue_len == 1


def test_send_routes_with_own_pid(host):
    process = make(host)
    process.send("gs2", Atom("hi"))
    assert host.routed == [(process.pid, "gs2", Atom("hi"))]


def test_send_after_delivers_and_cancels(host):
    process = make(host)
    process.send_after("gs2", "late", 0.05)
    cancel = process.send_after("gs2", "never", 0.2)
    cancel()
    time.sleep(0.4)
    assert host.routed == [(process.pid, "gs2", "late")]


def test_alias_create_and_delete(host):
    process = make(host)
    alias = process.create_alias()
    assert process.aliases == [alias]
    process.delete_alias(alias)
    assert process.aliases == []


def test_monitor_process_returns_ref(host):
    process = make(host)
    target = Pid(Atom(NODE), 1002, 1)
    ref = process.monitor_process(target)
    assert host.monitored == [(process.pid, target, ref)]
    assert process.demonitor_process(ref) is True
    assert process.monitors() == [target]


def test_link_and_unlink(host):
    process = make(host)
    other = Pid(Atom(NODE), 1002, 1)
    process.link(other)
    process.unlink(other)
    assert host.linked == [("link", process.pid, other), ("unlink", process.pid, other)]
    assert process.links() == [other]


def test_spawn_sets_parent(host):
    process = make(host)
    behavior = Idle()
    process.spawn("child", ProcessOptions(mailbox_size=7), behavior, "arg")
    name, opts, used, args = host.spawned[0]
    assert name == "child"
    assert opts.parent is process
    assert opts.mailbox_size == 7
    assert used is behavior
    assert args == ("arg",)


def test_wait_times_out_then_returns_after_kill(host):
    process = make(host)
    with pytest.raises(NodeTimeout):
        process.wait(0.05)
    process.kill()
    process.wait(0.05)
    assert process.stopped.is_set()