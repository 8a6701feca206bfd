"""Inter-node networking: routes, TLS setup, listening and handling of control messages."""

from __future__ import annotations

import ipaddress
import logging
import queue
import secrets
import socket
import ssl
import tempfile
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ergonode.monitor import virtual_pid
from ergonode.registrar import Peer, Registrar
from ergonode.types import (
    DEFAULT_SEND_QUEUE_LENGTH,
    Alias,
    Atom,
    DistProto,
    NetworkRoute,
    NodeError,
    Options,
    Pid,
    ProcessID,
    ProcessOptions,
    Ref,
    RemoteSpawnRequest,
    TLSMode,
    Version,
    default_version,
)

log = logging.getLogger(__name__)

REMOTE_BEHAVIOR_GROUP = "ergo:remote"
REMOTE_SPAWN_ENV_KEY = "ergo:RemoteSpawnRequest"
CERT_LIFETIME = timedelta(days=365)

# Dials a remote node, handshakes and then calls Network.serve for it.
Connector = Callable[[str, str, NetworkRoute], None]
# Receives a freshly accepted (and, with TLS, wrapped) connection.
Acceptor = Callable[[socket.socket], None]

_UNSUPPORTED = frozenset(
    {
        DistProto.SEND_SENDER,
        DistProto.PAYLOAD_EXIT,
        DistProto.PAYLOAD_EXIT2,
        DistProto.PAYLOAD_MONITOR_P_EXIT,
    }
)
_LOGGED_ONLY = frozenset({DistProto.NODE_LINK, DistProto.EXIT2})


def generate_self_signed_cert(version: Version) -> tuple[bytes, bytes]:
    """Create a self-signed ECDSA P-521 certificate; return (certificate PEM, key PEM)."""
    key = ec.generate_private_key(ec.SECP521R1())
    subject = x509.Name(
        [x509.NameAttribute(NameOID.ORGANIZATION_NAME, f"{version.prefix} {version.release}")]
    )
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(secrets.randbelow((1 << 128) - 1) + 1)
        .not_valid_before(now)
        .not_valid_after(now + CERT_LIFETIME)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.SubjectAlternativeName([x509.IPAddress(ipaddress.ip_address("127.0.0.1"))]),
            critical=False,
        )
        .sign(key, hashes.SHA512())
    )
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def _expect(value: Any, kind: type) -> Any:
    if not isinstance(value, kind):
        raise TypeError(f"expected {kind.__name__}, got {value!r}")
    return value


class Network:
    """Connects a node to its peers and applies the control messages they send.

    ``epmd`` resolves node names to routes and keeps static routes.
    """

    def __init__(
        self,
        name: str,
        opts: Options,
        registrar: Registrar,
        epmd: Any,
        connector: Connector | None = None,
        version: Version | None = None,
    ) -> None:
        parts = name.split("@")
        if len(parts) != 2:
            raise NodeError("FQDN for node name is required (example: node@hostname)")
        self.name = name
        self.host = parts[1]
        self.opts = opts
        self.registrar = registrar
        self.epmd = epmd
        self.connector = connector
        self.version = version if version is not None else default_version()
        self._closed = threading.Event()
        self._listeners: list[socket.socket] = []
        self.server_context, self.client_context = self._tls_contexts()
        self._handlers: dict[DistProto, Callable[[str, tuple, Any], None]] = {
            DistProto.REG_SEND: self._on_reg_send,
            DistProto.SEND: self._on_send,
            DistProto.LINK: self._on_link,
            DistProto.UNLINK: self._on_unlink,
            DistProto.EXIT: self._on_exit,
            DistProto.MONITOR: self._on_monitor,
            DistProto.DEMONITOR: self._on_demonitor,
            DistProto.MONITOR_EXIT: self._on_monitor_exit,
            DistProto.ALIAS_SEND: self._on_alias_send,
            DistProto.SPAWN_REQUEST: self._on_spawn_request,
            DistProto.SPAWN_REPLY: self._on_spawn_reply,
        }

    @property
    def tls_enabled(self) -> bool:
        return self.opts.tls_mode != TLSMode.DISABLED

    # TLS

    def _tls_contexts(self) -> tuple[ssl.SSLContext | None, ssl.SSLContext | None]:
        mode = self.opts.tls_mode
        if mode == TLSMode.AUTO:
            cert_pem, key_pem = generate_self_signed_cert(self.version)
            with tempfile.TemporaryDirectory() as directory:
                cert_path = Path(directory) / "cert.pem"
                key_path = Path(directory) / "key.pem"
                cert_path.write_bytes(cert_pem)
                key_path.write_bytes(key_pem)
                server = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
                server.load_cert_chain(cert_path, key_path)
                client = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
                client.check_hostname = False
                client.verify_mode = ssl.CERT_NONE
                client.load_cert_chain(cert_path, key_path)
            return server, client

        if mode == TLSMode.STRICT:
            server = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            try:
                server.load_cert_chain(self.opts.tls_crt_server, self.opts.tls_key_server)
            except OSError as exc:
                raise NodeError(f"Can't load server certificate: {exc}") from exc
            client = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            try:
                client.load_cert_chain(self.opts.tls_crt_server, self.opts.tls_key_server)
            except OSError as exc:
                raise NodeError(f"Can't load client certificate: {exc}") from exc
            return server, client

        return None, None

    # routes

    def add_static_route(self, name: str, port: int) -> None:
        """Add a static route using this node's cookie and TLS setting."""
        self.epmd.add_static_route(name, port, self.opts.cookie, self.tls_enabled)

    def add_static_route_ext(self, name: str, port: int, cookie: str, tls: bool) -> None:
        self.epmd.add_static_route(name, port, cookie, tls)

    def remove_static_route(self, name: str) -> None:
        self.epmd.remove_static_route(name)

    def resolve(self, name: str) -> NetworkRoute:
        return self.epmd.resolve(name)

    # spawning on behalf of peers

    def provide_remote_spawn(self, name: str, behavior: Any) -> None:
        """Let other nodes spawn ``behavior`` under the given name."""
        self.registrar.register_behavior(REMOTE_BEHAVIOR_GROUP, name, behavior, None)

    def revoke_remote_spawn(self, name: str) -> None:
        self.registrar.unregister_behavior(REMOTE_BEHAVIOR_GROUP, name)

    # listening and connecting

    def listen(self, acceptor: Acceptor, host: str | None = None) -> int:
        """Bind a listener to the first free number in the configured range and return it."""
        address = self.host if host is None else host
        for number in range(self.opts.listen_range_begin, self.opts.listen_range_end + 1):
            try:
                listener = socket.create_server((address, number))
            except OSError:
                continue
            self._listeners.append(listener)
            thread = threading.Thread(
                target=self._accept_loop,
                args=(listener, acceptor),
                name=f"listener-{self.name}-{number}",
                daemon=True,
            )
            thread.start()
            return number
        raise NodeError("Can't start listener. Port range is taken")

    def _accept_loop(self, listener: socket.socket, acceptor: Acceptor) -> None:
        while not self._closed.is_set():
            try:
                conn, address = listener.accept()
            except OSError as exc:
                if self._closed.is_set() or listener.fileno() < 0:
                    return
                log.debug("[%s] accept failed: %s", self.name, exc)
                continue
            if self._closed.is_set():
                conn.close()
                return
            log.debug("[%s] Accepted new connection from %s", self.name, address)
            if self.server_context is not None:
                try:
                    conn = self.server_context.wrap_socket(conn, server_side=True)
                except OSError as exc:
                    log.debug("[%s] TLS with %s failed: %s", self.name, address, exc)
                    conn.close()
                    continue
            try:
                acceptor(conn)
            except Exception as exc:
                log.debug("[%s] Can't handshake with %s: %s", self.name, address, exc)
                conn.close()

    def close(self) -> None:
        """Stop every listener."""
        self._closed.set()
        for listener in self._listeners:
            try:
                listener.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            listener.close()
        self._listeners.clear()

    def serve(self, name: str) -> Peer:
        """Register a connected peer; its ``send`` queue holds packets to write to it."""
        peer = Peer(
            name,
            queue.Queue(maxsize=self.opts.send_queue_length or DEFAULT_SEND_QUEUE_LENGTH),
        )
        self.registrar.register_peer(peer)
        return peer

    def disconnect(self, name: str) -> None:
        """Forget a peer whose link has closed."""
        self.registrar.unregister_peer(name)

    def connect(self, to: str) -> None:
        """Resolve a node and hand it to the connector, which establishes the link."""
        try:
            route = self.epmd.resolve(to)
        except (NodeError, OSError, ValueError) as exc:
            raise NodeError(f"Can't resolve port for {to}: {exc}") from exc
        if not route.cookie:
            route = replace(route, cookie=self.opts.cookie)
        parts = to.split("@")
        if len(parts) != 2:
            raise NodeError(f"incorrect FQDN node name: {to}")
        if self.connector is None:
            raise NodeError(f"no connector to reach {to}")
        self.connector(to, parts[1], route)

    # control messages

    def handle_message(self, from_node: str, control: Any, message: Any) -> None:
        """Apply a control message received from ``from_node``."""
        if not isinstance(control, tuple):
            return
        if not control or not isinstance(control[0], int):
            raise NodeError(f"unsupported message {control!r}")
        try:
            code = DistProto(control[0])
        except ValueError:
            log.debug("[%s] CONTROL unknown command [from %s]: %r", self.name, from_node, control)
            return
        handler = self._handlers.get(code)
        if handler is None:
            if code in _UNSUPPORTED:
                log.debug("[%s] CONTROL %s unsupported [from %s]", self.name, code.name, from_node)
            elif code in _LOGGED_ONLY:
                log.debug("[%s] CONTROL %s [from %s]: %r", self.name, code.name, from_node, control)
            else:
                log.debug("[%s] CONTROL unknown command [from %s]: %r", self.name, from_node, control)
            return
        try:
            handler(from_node, control, message)
        except (IndexError, TypeError, AttributeError, KeyError) as exc:
            raise NodeError(f"malformed control message {control!r}: {exc}") from exc

    def _route(self, sender: Pid, to: Any, message: Any) -> None:
        try:
            self.registrar.route(sender, to, message)
        except (NodeError, OSError) as exc:
            log.debug("[%s] can't deliver to %r: %s", self.name, to, exc)

    def _route_raw(self, node: str, packet: Any) -> None:
        try:
            self.registrar.route_raw(Atom(node), packet)
        except (NodeError, OSError) as exc:
            log.debug("[%s] can't reach %s: %s", self.name, node, exc)

    def _on_reg_send(self, from_node: str, control: tuple, message: Any) -> None:
        # {6, FromPid, Unused, ToName}
        self._route(_expect(control[1], Pid), control[3], message)

    def _on_send(self, from_node: str, control: tuple, message: Any) -> None:
        # {2, Unused, ToPid}
        self._route(Pid(), control[2], message)

    def _on_link(self, from_node: str, control: tuple, message: Any) -> None:
        self.registrar.link(_expect(control[1], Pid), _expect(control[2], Pid))

    def _on_unlink(self, from_node: str, control: tuple, message: Any) -> None:
        self.registrar.unlink(_expect(control[1], Pid), _expect(control[2], Pid))

    def _on_exit(self, from_node: str, control: tuple, message: Any) -> None:
        # {3, FromPid, ToPid, Reason}
        self.registrar.process_terminated(_expect(control[1], Pid), "", str(control[3]))

    def _on_monitor(self, from_node: str, control: tuple, message: Any) -> None:
        # {19, FromPid, ToProc, Ref}
        self.registrar.monitor_process(
            _expect(control[1], Pid), control[2], _expect(control[3], Ref)
        )

    def _on_demonitor(self, from_node: str, control: tuple, message: Any) -> None:
        self.registrar.demonitor_process(_expect(control[3], Ref))

    def _on_monitor_exit(self, from_node: str, control: tuple, message: Any) -> None:
        # {21, FromProc, ToPid, Ref, Reason}
        reason = str(control[4])
        terminated = control[1]
        if isinstance(terminated, Pid):
            self.registrar.process_terminated(terminated, "", reason)
        elif isinstance(terminated, Atom):
            vpid = virtual_pid(ProcessID(str(terminated), from_node))
            self.registrar.process_terminated(vpid, "", reason)

    def _on_alias_send(self, from_node: str, control: tuple, message: Any) -> None:
        # {33, FromPid, Alias}
        ref = _expect(control[2], Ref)
        alias = ref if isinstance(ref, Alias) else Alias(node=ref.node, creation=ref.creation, id=ref.id)
        self._route(_expect(control[1], Pid), alias, message)

    def _on_spawn_request(self, from_node: str, control: tuple, message: Any) -> None:
        # {29, ReqId, From, GroupLeader, {Module, Function, Arity}, OptList}
        register_name = ""
        for option in _expect(control[5], list):
            if not isinstance(option, tuple):
                break
            if option[0] == Atom("name"):
                register_name = str(option[1])

        sender = _expect(control[2], Pid)
        ref = _expect(control[1], Ref)
        mfa = _expect(control[4], tuple)
        module, function = mfa[0], mfa[1]

        if isinstance(message, str) and not isinstance(message, Atom):
            # a list of small integers arrives encoded as a string
            args = list(message.encode())
        elif isinstance(message, list):
            args = list(message)
        else:
            args = []

        def reply(result: Any) -> None:
            self._route_raw(str(sender.node), (DistProto.SPAWN_REPLY, ref, sender, 0, result))

        try:
            registered = self.registrar.registered_behavior(REMOTE_BEHAVIOR_GROUP, str(module))
        except NodeError:
            reply(Atom("not_provided"))
            return

        request = RemoteSpawnRequest(ref=ref, sender=sender, function=str(function))
        opts = ProcessOptions(env={REMOTE_SPAWN_ENV_KEY: request})
        try:
            process = self.registrar.spawn(register_name, opts, registered.behavior, *args)
        except Exception as exc:
            reply(Atom(str(exc)))
            return
        reply(process.pid)

    def _on_spawn_reply(self, from_node: str, control: tuple, message: Any) -> None:
        # {31, ReqId, To, Flags, Result}
        process = self.registrar.process_by_pid(_expect(control[2], Pid))
        if process is None:
            return
        try:
            process.put_sync_reply(_expect(control[1], Ref), control[4])
        except NodeError as exc:
            log.debug("[%s] spawn reply dropped: %s", self.name, exc)