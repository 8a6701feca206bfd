# ergonode

`ergonode` runs Erlang-style nodes in Python. A node hosts processes, each
with its own thread and mailbox. Processes can have registered names and
aliases, and they can link to and monitor one another. A node registers with
EPMD, the Erlang port mapper. It can start an embedded EPMD service of its own
and can resolve peers through static routes.

The package is organised as follows:

| Module | Contents |
| --- | --- |
| `ergonode.types` | Value types (`Atom`, `Pid`, `Ref`, `Alias`, `ProcessID`), `Options`, messages and errors |
| `ergonode.epmd` | EPMD packets, `EmbeddedEPMDServer` and `EPMDClient` |
| `ergonode.monitor` | `Monitor`: links, process monitors and node monitors |
| `ergonode.process` | `Process`, `ProcessBehavior` and `DirectMessage` |
| `ergonode.registrar` | `Registrar`: processes, names, aliases, peers, behaviours and message routing |
| `ergonode.network` | `Network`: listening, TLS contexts, static routes and handling of distribution control messages |
| `ergonode.node` | `Node` and `start_node` |

## Installation

```
pip install ergonode
```

To run the test suite as well:

```
pip install "ergonode[test]"
pytest
```

## Starting a node

A node name must have the form `name@host`. When a node starts, it does the
following:

* It binds a listener on `host` at the first free port in its listening range.
* It starts an embedded EPMD service on the EPMD port, unless
  `disable_epmd_server` is set or the port is already in use.
* It registers itself with the EPMD on `localhost`.

```python
from ergonode.node import start_node
from ergonode.types import Options

opts = Options(listen_range_begin=25001, listen_range_end=25001, epmd_port=24999)
node = start_node("demo@localhost", "secret", opts)

print(node.is_alive())   # True
print(node.uptime())     # seconds since the node started

node.stop()
node.wait(5)             # raises NodeTimeout if the node is still running
```

`Node(name, cookie, opts, epmd=...)` accepts any object that offers
`resolve`, `add_static_route` and `remove_static_route`. If one is given, the
node neither listens nor registers with EPMD.

`Options.with_defaults()` fills in every option left at zero or empty:

* listening range 15000–65000
* EPMD port 4369
* send and receive queues of 100
* fragmentation unit 65000 (also used for any value below 1500)
* handshake version 5 (for anything other than 5 or 6)

If `hidden` is set, the node registers with EPMD as a hidden node. If
`disable_epmd` is set, `resolve` uses static routes only. `tls_mode` selects
how TLS contexts are built:

* `TLSMode.DISABLED` builds none.
* `TLSMode.AUTO` builds them from a self-signed P-521 certificate made by
  `generate_self_signed_cert`.
* `TLSMode.STRICT` loads the certificate from `tls_crt_server` and
  `tls_key_server`.

## Processes

A process runs a `ProcessBehavior`:

* `process_init(process, *args)` returns a state.
* `process_loop(state, started)` runs in the process's own thread. It must set
  `started` once it is ready, and it returns the exit reason.

An exception raised in the loop ends the process with reason `"panic"`.

```python
import queue

from ergonode.process import DirectMessage, ProcessBehavior
from ergonode.types import Atom, ProcessOptions


class Echo(ProcessBehavior):
    def process_init(self, process, *args):
        return process

    def process_loop(self, process, started):
        started.set()
        while not process.stopped.is_set():
            try:
                request = process.direct_queue.get(timeout=0.1)
            except queue.Empty:
                pass
            else:
                request.reply.put(DirectMessage(message=request.message))
            while not process.mailbox.empty():
                item = process.mailbox.get_nowait()
                print(item.sender, item.message)
        return "normal"


proc = node.spawn("worker", ProcessOptions(), Echo())
proc.send("worker", Atom("hello"))      # by registered name
proc.send(proc.pid, Atom("again"))      # by Pid
print(proc.direct("ping"))              # "ping", answered by the loop

alias = proc.create_alias()
proc.send(alias, Atom("via alias"))
proc.delete_alias(alias)
```

### Addressing messages

A message can be addressed to any of the following:

* a `Pid`
* a registered name (`str` or `Atom`)
* a `ProcessID`, which is a name on a given node
* an `Alias`

Local messages go into the target's mailbox. A full mailbox raises
`ProcessBusy`. A message to an unknown local pid raises `ProcessUnknown`. A
message to a name that is not registered is dropped without an error.

### Other process operations

* `register_name` and `unregister_name`. Only the owner of a name may remove
  it; anyone else gets `NameOwner`.
* `send_after(to, message, seconds)`. It returns a function that cancels the
  send.
* `set_env`, `env` and `list_env`. `env` falls back to the group leader.
  `list_env` merges in the group leader's and the parent's environments.
* `spawn`, which starts a child process with this process as its parent.
* `info()`, which returns a `ProcessInfo` snapshot.
* `kill()`, `exit(reason)`, `is_alive()` and `wait(timeout)`.

`exit` queues a `GracefulExitRequest` on `process.graceful_exit`. It also
stops the process unless `trap_exit` is set. A process that has terminated
raises `ProcessTerminated` from most of these calls.

## Links and monitors

Links are bidirectional, and there is at most one link between two processes.
When a linked process ends, each live local partner gets an exit with the same
reason.

Monitors are one-way. `monitor_process` accepts a `Pid`, a local name or a
`ProcessID`, and returns a `Ref`. When the target ends, the monitoring process
receives a `MessageDown`. If the target does not exist, the `MessageDown`
arrives at once with reason `noproc`.

When `Registrar.unregister_peer` removes a peer:

* node monitors on that peer receive `MessageNodeDown`;
* monitors on the peer's processes fire with `noconnection`;
* links to the peer's processes are dropped.

```python
ref = proc.monitor_process("other")
proc.demonitor_process(ref)

node_ref = proc.monitor_node("peer@localhost")
proc.demonitor_node(node_ref)
```

The node can list these for any process: `node.links(pid)`,
`node.monitors(pid)`, `node.monitors_by_name(pid)` and
`node.monitored_by(pid)`.

## Static routes

```python
node.add_static_route("peer@localhost", 9876)
route = node.resolve("peer@localhost")   # NetworkRoute(port=9876, ...)
node.remove_static_route("peer@localhost")
```

A name without `@host` is taken to be on `localhost`, and the host must
resolve. Adding a route that already exists raises `Taken`.
`add_static_route_ext` also sets the route's cookie and TLS flag. If no static
route with a port matches, `resolve` asks the EPMD on the node's host.

## EPMD on its own

`EmbeddedEPMDServer().serve(port)` runs a standalone in-memory port mapper.
It handles ALIVE2, PORT_PLEASE2 and NAMES requests, and `close()` stops it.
The packet helpers `compose_alive2_req`, `read_alive2_resp` and
`compose_port_please2_req` build and read the wire format.

## Control messages and remote spawn

`Network.handle_message(from_node, control, message)` applies a distribution
control tuple that has already been decoded. It handles these operations:

* SEND, REG_SEND and ALIAS_SEND
* LINK, UNLINK and EXIT
* MONITOR, DEMONITOR and MONITOR_EXIT
* SPAWN_REQUEST and SPAWN_REPLY

`node.provide_remote_spawn(name, behavior)` lets SPAWN_REQUEST start that
behaviour. `Process.remote_spawn(...)` sends a request and waits for the
reply. It raises `Taken` when the requested name is already in use.

Outgoing packets for a peer are placed as term lists on its `Peer.send` queue.

## Applications

An application object has a `load(*args)` method that returns an
`ApplicationSpec`. Register it with `application_load`. Start it with one of
these, which start its dependencies first:

* `application_start`
* `application_start_transient`
* `application_start_permanent`

Inspect applications with `loaded_applications()`, `which_applications()` and
`application_info(name)`. `application_stop` asks the application's process to
exit with reason `normal`. It waits up to 5 seconds, then raises
`ProcessBusy`.

`provide_rpc` and `revoke_rpc` send a request to a process registered as
`rex`. If no such process exists, they raise `NodeError("RPC is disabled")`.

## What is not included

* There is no handshake and no external term encoding, so nodes do not
  exchange messages over the wire.
* The node closes incoming connections as soon as they are accepted.
* `Network.connect` needs a `connector` function to open links, and `Node`
  does not supply one.
* Messages to remote nodes therefore fail with `NodeError` unless a peer has
  been registered by other code.
* There is no built-in RPC process and no command-line tool.

## Errors

Every error derives from `NodeError`:

* applications: `AppUnknown`, `AppAlreadyStarted`, `AppIsNotRunning`,
  `AppAlreadyLoaded`
* names: `NameUnknown`, `NameOwner`, `Taken`
* processes: `ProcessUnknown`, `ProcessTerminated`, `ProcessBusy`
* behaviours: `BehaviorUnknown`, `BehaviorGroupUnknown`
* aliases: `AliasUnknown`, `AliasOwner`
* `NodeTimeout`, which is also a `TimeoutError`
* `Fragmented`