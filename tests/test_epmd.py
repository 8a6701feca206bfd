import socket
import struct
import time

import pytest

from ergonode.epmd import (
    EPMD_ALIVE2_REQ,
    EPMD_ALIVE2_RESP,
    EPMD_NAMES_REQ,
    EPMD_PORT2_RESP,
    EPMDClient,
    EmbeddedEPMDServer,
    NodeInfo,
    compose_alive2_req,
    compose_port_please2_req,
    read_alive2_resp,
)
from ergonode.types import NetworkRoute, NodeError, Options, Taken


@pytest.fixture
def server():
    srv = EmbeddedEPMDServer()
    port = srv.serve(0)
    yield srv, port
    srv.close()


def client_opts(port, **kwargs):
    return Options(epmd_port=port, disable_epmd_server=True, **kwargs).with_defaults()


def test_compose_port_please2_req_bytes():
    assert compose_port_please2_req("node") == b"\x00\x05znode"


def test_compose_alive2_req_layout():
    packet = compose_alive2_req("node", 25001, 77, 0, 5, 5, b"xy")
    assert int.from_bytes(packet[:2], "big") == len(packet) - 2
    assert packet[2] == EPMD_ALIVE2_REQ
    port, node_type, proto, hi, lo, nlen = struct.unpack_from(">HBBHHH", packet, 3)
    assert (port, node_type, proto, hi, lo, nlen) == (25001, 77, 0, 5, 5, 4)
    assert packet[13:17] == b"node"
    assert packet[17:19] == b"\x00\x02"
    assert packet[19:21] == b"xy"


def test_read_alive2_resp():
    assert read_alive2_resp(bytes([EPMD_ALIVE2_RESP, 0, 0, 1])) == 1
    assert read_alive2_resp(bytes([EPMD_ALIVE2_RESP, 1, 0, 1])) is None
    with pytest.raises(ValueError):
        read_alive2_resp(b"\x79")


def test_alive2_round_trip_registers():
    srv = EmbeddedEPMDServer()
    packet = compose_alive2_req("alpha", 25001, 72, 0, 6, 5, b"")
    reply, registered = srv.compose_alive2_resp(packet[3:])
    assert registered == "alpha"
    assert reply == bytes([EPMD_ALIVE2_RESP, 0, 0, 1])
    assert srv.get("alpha") == NodeInfo(port=25001, hidden=True, hi_version=6, lo_version=5)


def test_alive2_duplicate_refused():
    srv = EmbeddedEPMDServer()
    body = compose_alive2_req("alpha", 25001, 77, 0, 5, 5, b"")[3:]
    srv.compose_alive2_resp(body)
    reply, registered = srv.compose_alive2_resp(body)
    assert registered == ""
    assert reply[1] == 1


def test_join_leave_list():
    srv = EmbeddedEPMDServer()
    assert srv.join("a", NodeInfo(port=1))
    assert not srv.join("a", NodeInfo(port=2))
    assert srv.list_all() == {"a": 1}
    srv.leave("a")
    assert srv.get("a") is None
    assert srv.list_all() == {}


def test_port2_resp_found_and_missing():
    srv = EmbeddedEPMDServer()
    assert srv.compose_port2_resp(b"ghost") == bytes([EPMD_PORT2_RESP, 1])
    srv.join("beta", NodeInfo(port=25002, hidden=False, hi_version=5, lo_version=5, extra=b"e"))
    reply = srv.compose_port2_resp(b"beta")
    assert reply[:2] == bytes([EPMD_PORT2_RESP, 0])
    assert int.from_bytes(reply[2:4], "big") == 25002
    assert reply[4] == 77
    assert reply[12:16] == b"beta"
    assert reply[16:18] == b"\x00\x01"
    assert reply[18:] == b"e"


def test_names_resp():
    srv = EmbeddedEPMDServer()
    srv.join("gamma", NodeInfo(port=25003))
    reply = srv.compose_names_resp(4369)
    assert reply[:4] == (4369).to_bytes(4, "big")
    assert reply[4:] == b"name gamma at port 25003\n"


def test_register_and_resolve(server):
    srv, port = server
    with EPMDClient("alpha@localhost", 25111, client_opts(port)) as client:
        assert client.register() == 1
        assert srv.get("alpha").port == 25111
        assert client.resolve_port("alpha@localhost") == 25111
        assert client.resolve("alpha@localhost") == NetworkRoute(25111, "", False)


def test_hidden_registration(server):
    srv, port = server
    with EPMDClient("hid@localhost", 25112, client_opts(port, hidden=True)) as client:
        client.register()
        assert srv.get("hid").hidden is True


def test_duplicate_registration_rejected(server):
    _, port = server
    with EPMDClient("dup@localhost", 25113, client_opts(port)) as first:
        first.register()
        with EPMDClient("dup@localhost", 25114, client_opts(port)) as second:
            with pytest.raises(Taken):
                second.register()


def test_leave_after_close(server):
    srv, port = server
    with EPMDClient("gone@localhost", 25115, client_opts(port)) as client:
        client.register()
        assert srv.get("gone") is not None and srv.get("gone").port == 25115
    deadline = time.monotonic() + 2
    while srv.get("gone") is not None and time.monotonic() < deadline:
        time.sleep(0.01)
    assert srv.get("gone") is None


def test_resolve_unknown_node(server):
    _, port = server
    client = EPMDClient("me@localhost", 25116, client_opts(port))
    with pytest.raises(NodeError, match="not found"):
        client.resolve_port("ghost@localhost")


def test_names_request_over_socket(server):
    srv, port = server
    srv.join("delta", NodeInfo(port=25117))
    with socket.create_connection(("localhost", port)) as conn:
        conn.sendall(struct.pack(">HB", 1, EPMD_NAMES_REQ))
        chunks = []
        while True:
            chunk = conn.recv(1024)
            if not chunk:
                break
            chunks.append(chunk)
    reply = b"".join(chunks)
    assert reply[:4] == port.to_bytes(4, "big")
    assert b"name delta at port 25117\n" in reply


def test_static_route_overrides_and_removes():
    client = EPMDClient("me@localhost", 25118, client_opts(1, disable_epmd=True))
    client.add_static_route("other@localhost", 9876, "secret", True)
    assert client.resolve("other@localhost") == NetworkRoute(9876, "secret", True)
    with pytest.raises(Taken):
        client.add_static_route("other@localhost", 9877, "secret", False)
    client.remove_static_route("other@localhost")
    with pytest.raises(NodeError, match="Can't resolve"):
        client.resolve("other@localhost")


def test_static_route_requires_port_when_epmd_disabled():
    client = EPMDClient("me@localhost", 25119, client_opts(1, disable_epmd=True))
    with pytest.raises(NodeError):
        client.add_static_route("other@localhost", 0, "secret", False)


def test_static_route_wrong_fqdn():
    client = EPMDClient("me@localhost", 25120, client_opts(1))
    with pytest.raises(ValueError):
        client.add_static_route("a@b@c", 1, "secret", False)


def test_client_requires_fqdn():
    with pytest.raises(ValueError):
        EPMDClient("plainname", 25121, client_opts(1))
    with pytest.raises(ValueError):
        EPMDClient("me@localhost", 25122, client_opts(1)).resolve_port("noat")