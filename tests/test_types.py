import pytest

from ergonode.types import (
    Alias,
    ApplicationSpec,
    Atom,
    DistProto,
    MessageDown,
    NodeError,
    NodeTimeout,
    Options,
    Pid,
    ProcessID,
    ProcessTerminated,
    Ref,
    Taken,
    TLSMode,
    Version,
    AliasOwner,
    NameOwner,
    default_version,
)


def test_default_version_matches_release():
    assert default_version() == Version(release="2.0.0", prefix="ergo", otp=24)


def test_options_defaults_applied():
    opts = Options().with_defaults()
    assert opts.listen_range_begin == 15000
    assert opts.listen_range_end == 65000
    assert opts.epmd_port == 4369
    assert opts.send_queue_length == 100
    assert opts.recv_queue_length == 100
    assert opts.fragmentation_unit == 65000
    assert opts.handshake_version == 5
    assert opts.tls_mode is TLSMode.DISABLED


def test_options_explicit_values_kept():
    opts = Options(
        listen_range_begin=25001,
        listen_range_end=25001,
        epmd_port=24999,
        handshake_version=6,
        fragmentation_unit=1500,
    ).with_defaults()
    assert (opts.listen_range_begin, opts.listen_range_end) == (25001, 25001)
    assert opts.epmd_port == 24999
    assert opts.handshake_version == 6
    assert opts.fragmentation_unit == 1500


@pytest.mark.parametrize("version", [0, 4, 7])
def test_options_bad_handshake_version_replaced(version):
    assert Options(handshake_version=version).with_defaults().handshake_version == 5


def test_options_small_fragmentation_unit_replaced():
    assert Options(fragmentation_unit=1499).with_defaults().fragmentation_unit == 65000


def test_with_defaults_does_not_mutate():
    original = Options()
    original.with_defaults()
    assert original.epmd_port == 0
    assert original.listen_range_begin == 0


def test_pid_value_semantics():
    a = Pid(Atom("node@localhost"), 1000, 1)
    b = Pid(Atom("node@localhost"), 1000, 1)
    assert a == b
    assert len({a, b}) == 1
    assert Pid(Atom("node@localhost"), 1001, 1) != a


def test_alias_differs_from_ref_with_same_fields():
    ref = Ref(Atom("node@localhost"), 1, (1, 2, 3))
    alias = Alias(ref.node, ref.creation, ref.id)
    assert alias != ref
    assert alias == Alias(Atom("node@localhost"), 1, (1, 2, 3))


def test_atom_is_string():
    atom = Atom("ok")
    assert atom == "ok"
    assert isinstance(atom, str)
    assert repr(atom) == "Atom('ok')"


@pytest.mark.parametrize(
    "code, name",
    [
        (1, "LINK"),
        (6, "REG_SEND"),
        (21, "MONITOR_EXIT"),
        (29, "SPAWN_REQUEST"),
        (33, "ALIAS_SEND"),
    ],
)
def test_dist_proto_lookup_by_code(code, name):
    assert DistProto(code).name == name


def test_dist_proto_unknown_code_rejected():
    with pytest.raises(ValueError):
        DistProto(99)


def test_tls_mode_from_value():
    assert TLSMode("auto") is TLSMode.AUTO
    assert TLSMode("strict") is TLSMode.STRICT
    assert TLSMode("") is TLSMode.DISABLED


def test_errors_default_messages():
    assert str(Taken()) == "Resource is taken"
    assert str(ProcessTerminated()) == "Process terminated"
    assert str(NodeTimeout()) == "Timed out"
    assert str(AliasOwner()) == str(NameOwner())


def test_errors_hierarchy():
    with pytest.raises(NodeError):
        raise Taken()
    with pytest.raises(TimeoutError):
        raise NodeTimeout()
    assert str(Taken("custom")) == "custom"


def test_message_down_defaults():
    down = MessageDown(ref=Ref(Atom("n@h"), 1, (1, 0, 0)), reason="noproc")
    assert down.pid == Pid()
    assert down.process_id == ProcessID()
    assert down.reason == "noproc"


def test_application_spec_lock_not_compared():
    assert ApplicationSpec(name="app") == ApplicationSpec(name="app")
    spec = ApplicationSpec(name="app")
    with spec.lock:
        assert spec.lock.locked()
    assert not spec.lock.locked()