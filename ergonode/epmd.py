"""Port mapper: wire messages, an embedded server and a client with static routes."""

from __future__ import annotations

import logging
import socket
import struct
import threading
from dataclasses import dataclass

from ergonode.types import NetworkRoute, NodeError, Options, Taken

log = logging.getLogger(__name__)

EPMD_ALIVE2_REQ = 120
EPMD_ALIVE2_RESP = 121
EPMD_PORT_PLEASE2_REQ = 122
EPMD_PORT2_RESP = 119
EPMD_NAMES_REQ = 110
EPMD_DUMP_REQ = 100
EPMD_KILL_REQ = 107
EPMD_STOP_REQ = 115

NODE_TYPE_HIDDEN = 72
NODE_TYPE_NORMAL = 77
KEEPALIVE_SECONDS = 15
_READ_SIZE = 1024


def compose_alive2_req(name, node_port, node_type, protocol, high_vsn, low_vsn, extra):
    """Build an ALIVE2_REQ packet that registers a node with the port mapper."""
    raw_name = name.encode()
    extra = bytes(extra)
    body = (
        struct.pack(
            ">BHBBHHH",
            EPMD_ALIVE2_REQ,
            node_port,
            node_type,
            protocol,
            high_vsn,
            low_vsn,
            len(raw_name),
        )
        + raw_name
        + struct.pack(">H", len(extra))
        + extra
        # the declared length covers one trailing zero byte
        + b"\x00"
    )
    return struct.pack(">H", len(body)) + body


def read_alive2_resp(reply):
    """Return the creation from an ALIVE2_RESP, or None if registration was refused."""
    if len(reply) < 2:
        raise ValueError("ALIVE2_RESP is too short")
    if reply[1] != 0:
        return None
    if len(reply) < 4:
        raise ValueError("ALIVE2_RESP is too short")
    return int.from_bytes(reply[2:4], "big")


def compose_port_please2_req(name):
    """Build a PORT_PLEASE2_REQ packet asking for the port of a node."""
    raw_name = name.encode()
    return struct.pack(">HB", 1 + len(raw_name), EPMD_PORT_PLEASE2_REQ) + raw_name


def _tune(conn):
    try:
        conn.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        if hasattr(socket, "TCP_KEEPIDLE"):
            conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, KEEPALIVE_SECONDS)
    except OSError:
        pass


def _send(conn, data):
    try:
        conn.sendall(data)
    except OSError as exc:
        log.debug("EPMD: write failed: %s", exc)


def _shutdown(sock):
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


@dataclass
class NodeInfo:
    port: int
    hidden: bool = False
    hi_version: int = 0
    lo_version: int = 0
    extra: bytes = b""


class EmbeddedEPMDServer:
    """A minimal port mapper that keeps node registrations in memory."""

    def __init__(self):
        self._portmap: dict[str, NodeInfo] = {}
        self._lock = threading.Lock()
        self._listener = None

    def join(self, name, info):
        """Register a node; False if the name is already registered."""
        with self._lock:
            if name in self._portmap:
                return False
            log.debug("EPMD registering node: %r port:%d hidden:%s", name, info.port, info.hidden)
            self._portmap[name] = info
            return True

    def get(self, name):
        with self._lock:
            return self._portmap.get(name)

    def leave(self, name):
        log.debug("EPMD unregistering node: %r", name)
        with self._lock:
            self._portmap.pop(name, None)

    def list_all(self):
        with self._lock:
            return {name: info.port for name, info in self._portmap.items()}

    def compose_alive2_resp(self, req):
        """Handle an ALIVE2_REQ body; return the reply and the registered name ('' if refused)."""
        port, node_type, _protocol, hi_version, lo_version, name_len = struct.unpack_from(
            ">HBBHHH", req
        )
        raw_name = req[10 : 10 + name_len]
        if len(raw_name) != name_len:
            raise ValueError("ALIVE2_REQ name is truncated")
        name = raw_name.decode("utf-8", "replace")
        info = NodeInfo(
            port=port,
            hidden=node_type == NODE_TYPE_HIDDEN,
            hi_version=hi_version,
            lo_version=lo_version,
        )
        registered = name if self.join(name, info) else ""
        result = 0 if registered else 1
        return struct.pack(">BBH", EPMD_ALIVE2_RESP, result, 1), registered

    def compose_port2_resp(self, req):
        """Handle a PORT_PLEASE2_REQ body (the node name)."""
        raw_name = bytes(req)
        name = raw_name.decode("utf-8", "replace")
        info = self.get(name)
        if info is None:
            log.debug("EPMD: looking for %r. Not found", name)
            return bytes([EPMD_PORT2_RESP, 1])
        node_type = NODE_TYPE_HIDDEN if info.hidden else NODE_TYPE_NORMAL
        head = struct.pack(
            ">BBHBBHHH",
            EPMD_PORT2_RESP,
            0,
            info.port,
            node_type,
            0,
            info.hi_version,
            info.lo_version,
            len(raw_name),
        )
        return head + raw_name + struct.pack(">H", len(info.extra)) + info.extra

    def compose_names_resp(self, port):
        """Build the NAMES reply: the mapper port followed by one line per node."""
        lines = "".join(f"name {name} at port {p}\n" for name, p in self.list_all().items())
        return struct.pack(">I", port) + lines.encode()

    def handle_connection(self, conn):
        """Serve one client connection until it closes."""
        name = ""
        with conn:
            while True:
                try:
                    data = conn.recv(_READ_SIZE)
                except OSError:
                    data = b""
                if not data:
                    if name:
                        self.leave(name)
                    return
                if len(data) < 3 or len(data) - 2 != int.from_bytes(data[:2], "big"):
                    continue
                command, payload = data[2], data[3:]
                if command == EPMD_ALIVE2_REQ:
                    try:
                        reply, registered = self.compose_alive2_resp(payload)
                    except (struct.error, ValueError):
                        log.debug("malformed ALIVE2_REQ")
                        return
                    _send(conn, reply)
                    if not registered:
                        return
                    name = registered
                    _tune(conn)
                elif command == EPMD_PORT_PLEASE2_REQ:
                    _send(conn, self.compose_port2_resp(payload))
                    return
                elif command == EPMD_NAMES_REQ:
                    port = self._listener.getsockname()[1] if self._listener else 0
                    _send(conn, self.compose_names_resp(port))
                    return
                else:
                    log.debug("unknown EPMD request")
                    return

    def serve(self, port):
        """Listen on the given port and serve clients in background threads; return the port."""
        if self._listener is not None:
            raise NodeError("EPMD server is already running")
        listener = socket.create_server(("", port))
        self._listener = listener
        log.debug("Started embedded EPMD service and listen port: %d", port)
        threading.Thread(target=self._accept_loop, args=(listener,), daemon=True).start()
        return listener.getsockname()[1]

    def _accept_loop(self, listener):
        while True:
            try:
                conn, address = listener.accept()
            except OSError as exc:
                if self._listener is not listener:
                    return
                log.debug("EPMD accept failed: %s", exc)
                continue
            log.debug("EPMD accepted new connection from %s", address)
            threading.Thread(target=self.handle_connection, args=(conn,), daemon=True).start()

    def close(self):
        listener, self._listener = self._listener, None
        if listener is not None:
            _shutdown(listener)


class EPMDClient:
    """Registers a node with a port mapper and resolves other nodes' ports."""

    def __init__(self, name, node_port, opts: Options):
        parts = name.split("@")
        if len(parts) != 2:
            raise ValueError("FQDN for node name is required (example: node@hostname)")
        self.name, self.domain = parts
        self.node_port = node_port
        self.port = opts.epmd_port
        self.type = NODE_TYPE_HIDDEN if opts.hidden else NODE_TYPE_NORMAL
        self.protocol = 0
        self.high_vsn = opts.handshake_version
        self.low_vsn = 5
        self.extra = b""
        self.creation = opts.creation & 0xFFFF
        self._static_only = opts.disable_epmd
        self._embedded = not opts.disable_epmd_server
        self._routes: dict[str, NetworkRoute] = {}
        self._lock = threading.Lock()
        self._server = None
        self._conn = None
        self._stop = threading.Event()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self._stop.set()
        if self._conn is not None:
            _shutdown(self._conn)
            self._conn = None
        if self._server is not None:
            self._server.close()
            self._server = None

    def register(self):
        """Register with the port mapper, keep the registration alive; return the creation."""
        conn = self._announce()
        self._conn = conn
        threading.Thread(target=self._keep_registered, args=(conn,), daemon=True).start()
        return self.creation

    def _announce(self):
        if self._embedded and self._server is None:
            server = EmbeddedEPMDServer()
            try:
                server.serve(self.port)
                self._server = server
            except OSError as exc:
                log.debug("Can't start embedded EPMD service: %s", exc)
        conn = socket.create_connection(("localhost", self.port))
        _tune(conn)
        try:
            conn.sendall(
                compose_alive2_req(
                    self.name,
                    self.node_port,
                    self.type,
                    self.protocol,
                    self.high_vsn,
                    self.low_vsn,
                    self.extra,
                )
            )
            reply = conn.recv(_READ_SIZE)
        except OSError:
            conn.close()
            raise
        if len(reply) < 2 or reply[0] != EPMD_ALIVE2_RESP:
            conn.close()
            raise NodeError("Malformed EPMD reply")
        creation = read_alive2_resp(reply)
        if creation is None:
            conn.close()
            raise Taken(f"Duplicate name '{self.name}'")
        self.creation = creation
        return conn

    def _keep_registered(self, conn):
        while not self._stop.is_set():
            try:
                data = conn.recv(_READ_SIZE)
            except OSError:
                data = b""
            if len(data) >= 4 and data[0] == EPMD_ALIVE2_RESP:
                creation = read_alive2_resp(data)
                if creation is None:
                    conn.close()
                    return
                self.creation = creation
                continue
            log.debug("EPMD: closing connection")
            conn.close()
            if self._stop.is_set():
                return
            try:
                conn = self._announce()
            except (OSError, NodeError, ValueError) as exc:
                log.debug("EPMD: re-registration failed: %s", exc)
                return
            self._conn = conn

    def add_static_route(self, name, port, cookie, tls):
        parts = name.split("@")
        if len(parts) == 1:
            parts.append("localhost")
        if len(parts) != 2:
            raise ValueError("wrong FQDN")
        socket.getaddrinfo(parts[1], None)
        if self._static_only and port == 0:
            raise NodeError("EPMD is disabled. Port must be > 0")
        with self._lock:
            if name in self._routes:
                raise Taken(f"static route for {name} already exists")
            self._routes[name] = NetworkRoute(port, cookie, tls)

    def remove_static_route(self, name):
        with self._lock:
            self._routes.pop(name, None)

    def resolve(self, name):
        """Return the route to a node, preferring a static route with a port."""
        with self._lock:
            route = self._routes.get(name, NetworkRoute())
        if route.port > 0:
            return route
        if self._static_only:
            raise NodeError(f"Can't resolve {name}")
        port = self.resolve_port(name)
        return NetworkRoute(port, route.cookie, route.tls)

    def resolve_port(self, name):
        """Ask the port mapper on the node's host for the node's listening port."""
        parts = name.split("@")
        if len(parts) != 2:
            raise ValueError("incorrect FQDN node name (example: node@localhost)")
        with socket.create_connection((parts[1], self.port)) as conn:
            try:
                conn.sendall(compose_port_please2_req(parts[0]))
            except OSError as exc:
                raise NodeError(f"initiate connection - {exc}") from exc
            try:
                reply = conn.recv(_READ_SIZE)
            except OSError as exc:
                raise NodeError(f"reading from link - {exc}") from exc
        if len(reply) >= 4 and reply[0] == EPMD_PORT2_RESP and reply[1] == 0:
            return int.from_bytes(reply[2:4], "big")
        if len(reply) >= 2 and reply[1] > 0:
            raise NodeError("desired node not found")
        raise NodeError(f"malformed reply - {reply!r}")