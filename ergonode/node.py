"""A node: the registrar, the network and the applications running on them."""

from __future__ import annotations

import logging
import socket
import threading
import time
from dataclasses import dataclass, replace
from typing import Any

from ergonode.epmd import EPMDClient
from ergonode.network import Network
from ergonode.process import Process
from ergonode.registrar import Registrar
from ergonode.types import (
    Alias,
    AppAlreadyStarted,
    AppIsNotRunning,
    AppUnknown,
    ApplicationInfo,
    ApplicationSpec,
    NetworkRoute,
    NodeError,
    NodeTimeout,
    Options,
    Pid,
    ProcessBusy,
    ProcessID,
    ProcessInfo,
    ProcessOptions,
    Ref,
    RegisteredBehavior,
    Version,
    default_version,
)

log = logging.getLogger(__name__)

APP_BEHAVIOR_GROUP = "ergo:applications"
APP_START_PERMANENT = "permanent"
APP_START_TRANSIENT = "transient"
APP_START_TEMPORARY = "temporary"
APP_STOP_TIMEOUT = 5.0
RPC_PROCESS_NAME = "rex"


@dataclass(frozen=True)
class _ManageRPC:
    """Request to the RPC process to provide or revoke a function."""

    provide: bool
    module: str
    function: str
    fun: Any = None


def _reject_connection(conn: socket.socket) -> None:
    """Close an incoming connection this node has no link protocol for."""
    log.debug("closing incoming connection: no link protocol available")
    conn.close()


def _is_running(spec: ApplicationSpec) -> bool:
    process = spec.process
    return process is not None and process.is_alive()


class Node:
    """A running node.

    ``epmd`` resolves node names to network routes. When it is not given the
    node listens on its port range and registers itself with the port mapper.
    """

    def __init__(
        self,
        name: str,
        cookie: str,
        opts: Options | None = None,
        epmd: Any = None,
    ) -> None:
        if not name:
            raise NodeError("Node name must be defined")
        options = (opts if opts is not None else Options()).with_defaults()
        if options.hidden:
            log.debug("Running as hidden node")
        if len(name.split("@")) != 2:
            raise NodeError("incorrect FQDN node name (example: node@localhost)")

        # creation must be > 0
        self.creation = (int(time.time()) & 0xFFFFFFFF) | 1
        self.name = name
        self.cookie = cookie
        self.opts = replace(options, cookie=cookie, creation=self.creation)
        self.version: Version = default_version()
        self._stopped = threading.Event()

        self.registrar = Registrar(name, self.creation, node=self, connect=self._connect)
        self.network = Network(name, self.opts, self.registrar, epmd, version=self.version)
        if epmd is None:
            port = self.network.listen(_reject_connection)
            client = EPMDClient(name, port, self.opts)
            try:
                client.register()
            except Exception:
                self.network.close()
                raise
            self.network.epmd = client

        for app in self.opts.applications:
            try:
                app_name = self.application_load(app)
                self.application_start(app_name)
            except Exception:
                self.stop()
                raise

    def __repr__(self) -> str:
        return f"Node({self.name!r})"

    def _connect(self, to: str) -> None:
        self.network.connect(to)

    # life cycle

    def is_alive(self) -> bool:
        return not self._stopped.is_set()

    def wait(self, timeout: float | None = None) -> None:
        """Block until the node stops; raise NodeTimeout if ``timeout`` passes first."""
        if not self._stopped.wait(timeout):
            raise NodeTimeout()

    def uptime(self) -> int:
        """Seconds since the node started."""
        return int(time.time()) - self.creation

    def stop(self) -> None:
        """Stop the node and every process on it."""
        if self._stopped.is_set():
            return
        self._stopped.set()
        self.registrar.kill_all()
        self.network.close()

    # processes

    def spawn(self, name: str, opts: ProcessOptions | None, behavior: Any, *args: Any) -> Process:
        """Start a process with no parent."""
        options = replace(opts if opts is not None else ProcessOptions(), parent=None)
        return self.registrar.spawn(name, options, behavior, *args)

    def register_name(self, name: str, pid: Pid) -> None:
        self.registrar.register_name(name, pid)

    def unregister_name(self, name: str) -> None:
        self.registrar.unregister_name(name)

    def process_by_pid(self, pid: Pid) -> Process | None:
        return self.registrar.process_by_pid(pid)

    def process_by_name(self, name: str) -> Process | None:
        return self.registrar.process_by_name(name)

    def process_by_alias(self, alias: Alias) -> Process | None:
        return self.registrar.process_by_alias(alias)

    def process_list(self) -> list[Process]:
        return self.registrar.process_list()

    def process_info(self, pid: Pid) -> ProcessInfo:
        return self.registrar.process_info(pid)

    def is_process_alive(self, process: Any) -> bool:
        return self.registrar.is_process_alive(process)

    def is_alias(self, alias: Alias) -> bool:
        return self.registrar.is_alias(alias)

    def make_ref(self) -> Ref:
        return self.registrar.make_ref()

    def peer_list(self) -> list[str]:
        return self.registrar.peer_list()

    def registered_behavior(self, group: str, name: str) -> RegisteredBehavior:
        return self.registrar.registered_behavior(group, name)

    def links(self, process: Pid) -> list[Pid]:
        return self.registrar.process_links(process)

    def monitors(self, process: Pid) -> list[Pid]:
        return self.registrar.process_monitors(process)

    def monitors_by_name(self, process: Pid) -> list[ProcessID]:
        return self.registrar.process_monitors_by_name(process)

    def monitored_by(self, process: Pid) -> list[Pid]:
        return self.registrar.process_monitored_by(process)

    # network

    def add_static_route(self, name: str, port: int) -> None:
        self.network.add_static_route(name, port)

    def add_static_route_ext(self, name: str, port: int, cookie: str, tls: bool) -> None:
        self.network.add_static_route_ext(name, port, cookie, tls)

    def remove_static_route(self, name: str) -> None:
        self.network.remove_static_route(name)

    def resolve(self, name: str) -> NetworkRoute:
        return self.network.resolve(name)

    def provide_remote_spawn(self, name: str, behavior: Any) -> None:
        self.network.provide_remote_spawn(name, behavior)

    def revoke_remote_spawn(self, name: str) -> None:
        self.network.revoke_remote_spawn(name)

    # applications

    def _spec(self, name: str) -> tuple[RegisteredBehavior, ApplicationSpec]:
        try:
            registered = self.registrar.registered_behavior(APP_BEHAVIOR_GROUP, name)
        except NodeError:
            raise AppUnknown() from None
        spec = registered.data
        if not isinstance(spec, ApplicationSpec):
            raise AppUnknown()
        return registered, spec

    def _list_applications(self, only_running: bool) -> list[ApplicationInfo]:
        result = []
        for registered in self.registrar.registered_behavior_group(APP_BEHAVIOR_GROUP):
            spec = registered.data
            if not isinstance(spec, ApplicationSpec):
                continue
            running = _is_running(spec)
            if only_running and not running:
                continue
            result.append(
                ApplicationInfo(
                    name=spec.name,
                    description=spec.description,
                    version=spec.version,
                    pid=spec.process.pid if running else Pid(),
                )
            )
        return result

    def loaded_applications(self) -> list[ApplicationInfo]:
        """Loaded applications, running ones included."""
        return self._list_applications(False)

    def which_applications(self) -> list[ApplicationInfo]:
        """Running applications."""
        return self._list_applications(True)

    def application_info(self, name: str) -> ApplicationInfo:
        _, spec = self._spec(name)
        pid = spec.process.pid if _is_running(spec) else Pid()
        return ApplicationInfo(
            name=spec.name, description=spec.description, version=spec.version, pid=pid
        )

    def application_load(self, app: Any, *args: Any) -> str:
        """Register an application's specification; return its name."""
        spec = app.load(*args)
        self.registrar.register_behavior(APP_BEHAVIOR_GROUP, spec.name, app, spec)
        return spec.name

    def application_unload(self, app_name: str) -> None:
        _, spec = self._spec(app_name)
        if _is_running(spec):
            raise AppAlreadyStarted()
        self.registrar.unregister_behavior(APP_BEHAVIOR_GROUP, app_name)

    def application_start(self, app_name: str, *args: Any) -> Process:
        """Start an application; its end is reported but stops nothing else."""
        return self._application_start(APP_START_TEMPORARY, app_name, *args)

    def application_start_permanent(self, app_name: str, *args: Any) -> Process:
        """Start an application whose end stops every other application and the node."""
        return self._application_start(APP_START_PERMANENT, app_name, *args)

    def application_start_transient(self, app_name: str, *args: Any) -> Process:
        """Start an application whose abnormal end stops the others and the node."""
        return self._application_start(APP_START_TRANSIENT, app_name, *args)

    def _application_start(self, start_type: str, app_name: str, *args: Any) -> Process:
        registered, spec = self._spec(app_name)
        spec.start_type = start_type
        with spec.lock:
            if _is_running(spec):
                raise AppAlreadyStarted()
            for dependency in spec.applications:
                try:
                    self.application_start(dependency)
                except AppAlreadyStarted:
                    pass
            options = ProcessOptions(env={"spec": spec})
            process = self.spawn(app_name, options, registered.behavior, *args)
            spec.process = process
            return process

    def application_stop(self, name: str) -> None:
        """Stop a running application and wait for it to finish."""
        _, spec = self._spec(name)
        with spec.lock:
            if not _is_running(spec):
                raise AppIsNotRunning()
            process = spec.process
            process.exit("normal")
            try:
                process.wait(APP_STOP_TIMEOUT)
            except NodeTimeout:
                raise ProcessBusy() from None
            spec.process = None

    # RPC

    def _rex(self) -> Process:
        rex = self.registrar.process_by_name(RPC_PROCESS_NAME)
        if rex is None:
            raise NodeError("RPC is disabled")
        return rex

    def provide_rpc(self, module: str, function: str, fun: Any) -> None:
        """Make ``fun`` callable remotely as module:function."""
        log.debug("[%s] RPC provide: %s:%s", self.name, module, function)
        self._rex().direct(_ManageRPC(provide=True, module=module, function=function, fun=fun))

    def revoke_rpc(self, module: str, function: str) -> None:
        log.debug("[%s] RPC revoke: %s:%s", self.name, module, function)
        self._rex().direct(_ManageRPC(provide=False, module=module, function=function))


def start_node(name: str, cookie: str, opts: Options | None = None) -> Node:
    """Start a node named ``name@host`` with the given cookie and options."""
    log.debug("Start with name %r", name)
    return Node(name, cookie, opts)