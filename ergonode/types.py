"""Core value types, node options and errors shared across the node."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any

VERSION = "2.0.0"
VERSION_PREFIX = "ergo"
VERSION_OTP = 24

DEFAULT_LISTEN_RANGE_BEGIN = 15000
DEFAULT_LISTEN_RANGE_END = 65000
DEFAULT_EPMD_PORT = 4369
DEFAULT_SEND_QUEUE_LENGTH = 100
DEFAULT_RECV_QUEUE_LENGTH = 100
DEFAULT_FRAGMENTATION_UNIT = 65000
DEFAULT_HANDSHAKE_VERSION = 5
MIN_FRAGMENTATION_UNIT = 1500


class Atom(str):
    """An Erlang atom: a string that is distinct from a plain string value."""

    __slots__ = ()

    def __repr__(self) -> str:
        return f"Atom({str.__repr__(self)})"


@dataclass(frozen=True)
class Pid:
    """Process identifier."""

    node: Atom = Atom("")
    id: int = 0
    creation: int = 0

    def __str__(self) -> str:
        return f"<{self.node}.{self.id}.{self.creation}>"


@dataclass(frozen=True)
class Ref:
    """Node-unique reference."""

    node: Atom = Atom("")
    creation: int = 0
    id: tuple[int, int, int] = (0, 0, 0)

    def __str__(self) -> str:
        return "#Ref<{}.{}>".format(self.node, ".".join(str(part) for part in self.id))


@dataclass(frozen=True)
class Alias(Ref):
    """A reference that addresses a process."""


@dataclass(frozen=True)
class ProcessID:
    """A registered process name on a given node."""

    name: str = ""
    node: str = ""


class DistProto(IntEnum):
    """Control message codes of the distribution protocol."""

    LINK = 1
    SEND = 2
    EXIT = 3
    UNLINK = 4
    NODE_LINK = 5
    REG_SEND = 6
    GROUP_LEADER = 7
    EXIT2 = 8
    SEND_TT = 12
    EXIT_TT = 13
    REG_SEND_TT = 16
    EXIT2_TT = 18
    MONITOR = 19
    DEMONITOR = 20
    MONITOR_EXIT = 21
    SEND_SENDER = 22
    SEND_SENDER_TT = 23
    PAYLOAD_EXIT = 24
    PAYLOAD_EXIT_TT = 25
    PAYLOAD_EXIT2 = 26
    PAYLOAD_EXIT2_TT = 27
    PAYLOAD_MONITOR_P_EXIT = 28
    SPAWN_REQUEST = 29
    SPAWN_REQUEST_TT = 30
    SPAWN_REPLY = 31
    SPAWN_REPLY_TT = 32
    ALIAS_SEND = 33
    ALIAS_SEND_TT = 34
    UNLINK_ID = 35
    UNLINK_ID_ACK = 36


class TLSMode(str, Enum):
    """How connections between nodes are encrypted."""

    DISABLED = ""
    AUTO = "auto"
    STRICT = "strict"


@dataclass(frozen=True)
class Version:
    release: str
    prefix: str
    otp: int


def default_version() -> Version:
    """Return the version this node software reports."""
    return Version(release=VERSION, prefix=VERSION_PREFIX, otp=VERSION_OTP)


@dataclass(frozen=True)
class NetworkRoute:
    port: int = 0
    cookie: str = ""
    tls: bool = False


@dataclass
class Options:
    """Options used to start a node."""

    applications: list[Any] = field(default_factory=list)
    listen_range_begin: int = 0
    listen_range_end: int = 0
    hidden: bool = False
    epmd_port: int = 0
    disable_epmd_server: bool = False
    disable_epmd: bool = False
    send_queue_length: int = 0
    recv_queue_length: int = 0
    fragmentation_unit: int = 0
    disable_header_atom_cache: bool = False
    tls_mode: TLSMode = TLSMode.DISABLED
    tls_crt_server: str = ""
    tls_key_server: str = ""
    tls_crt_client: str = ""
    tls_key_client: str = ""
    handshake_version: int = 0
    connection_handlers: int = 0
    cookie: str = ""
    creation: int = 0

    def with_defaults(self) -> Options:
        """Return a copy with every unset option replaced by its default."""
        return replace(
            self,
            applications=list(self.applications),
            listen_range_begin=self.listen_range_begin or DEFAULT_LISTEN_RANGE_BEGIN,
            listen_range_end=self.listen_range_end or DEFAULT_LISTEN_RANGE_END,
            epmd_port=self.epmd_port or DEFAULT_EPMD_PORT,
            send_queue_length=self.send_queue_length or DEFAULT_SEND_QUEUE_LENGTH,
            recv_queue_length=self.recv_queue_length or DEFAULT_RECV_QUEUE_LENGTH,
            fragmentation_unit=(
                self.fragmentation_unit
                if self.fragmentation_unit >= MIN_FRAGMENTATION_UNIT
                else DEFAULT_FRAGMENTATION_UNIT
            ),
            handshake_version=(
                self.handshake_version
                if self.handshake_version in (5, 6)
                else DEFAULT_HANDSHAKE_VERSION
            ),
        )


@dataclass(frozen=True)
class MessageDown:
    """Delivered to a monitoring process when the monitored one goes down."""

    ref: Ref = Ref()
    pid: Pid = Pid()
    process_id: ProcessID = ProcessID()
    reason: str = ""


@dataclass(frozen=True)
class MessageNodeDown:
    name: str


@dataclass(frozen=True)
class MessageExit:
    pid: Pid
    reason: str


@dataclass(frozen=True)
class MailboxMessage:
    sender: Pid
    message: Any


@dataclass(frozen=True)
class GracefulExitRequest:
    sender: Pid
    reason: str


@dataclass
class ProcessOptions:
    mailbox_size: int = 0
    group_leader: Any = None
    env: dict[str, Any] | None = None
    parent: Any = None


@dataclass
class ProcessInfo:
    pid: Pid = Pid()
    name: str = ""
    group_leader: Pid = Pid()
    links: list[Pid] = field(default_factory=list)
    monitors: list[Pid] = field(default_factory=list)
    monitors_by_name: list[ProcessID] = field(default_factory=list)
    monitored_by: list[Pid] = field(default_factory=list)
    aliases: list[Alias] = field(default_factory=list)
    status: str = ""
    message_queue_len: int = 0
    trap_exit: bool = False


@dataclass
class RegisteredBehavior:
    behavior: Any
    data: Any = None


@dataclass(frozen=True)
class RemoteSpawnRequest:
    ref: Ref
    sender: Pid
    function: str


@dataclass
class ApplicationSpec:
    name: str
    description: str = ""
    version: str = ""
    applications: list[str] = field(default_factory=list)
    environment: dict[str, Any] = field(default_factory=dict)
    children: list[Any] = field(default_factory=list)
    start_type: str = ""
    process: Any = None
    lock: Any = field(default_factory=threading.Lock, compare=False, repr=False)


@dataclass(frozen=True)
class ApplicationInfo:
    name: str
    description: str = ""
    version: str = ""
    pid: Pid = Pid()


class NodeError(Exception):
    """Base class of every error the node raises."""

    default_message = "node error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message if message is not None else self.default_message)


class AppAlreadyLoaded(NodeError):
    default_message = "Application is already loaded"


class AppAlreadyStarted(NodeError):
    default_message = "Application is already started"


class AppUnknown(NodeError):
    default_message = "Unknown application name"


class AppIsNotRunning(NodeError):
    default_message = "Application is not running"


class NameUnknown(NodeError):
    default_message = "Unknown name"


class NameOwner(NodeError):
    default_message = "Not an owner"


class ProcessBusy(NodeError):
    default_message = "Process is busy"


class ProcessUnknown(NodeError):
    default_message = "Unknown process"


class ProcessTerminated(NodeError):
    default_message = "Process terminated"


class BehaviorUnknown(NodeError):
    default_message = "Unknown behavior"


class BehaviorGroupUnknown(NodeError):
    default_message = "Unknown behavior group"


class AliasUnknown(NodeError):
    default_message = "Unknown alias"


class AliasOwner(NodeError):
    default_message = "Not an owner"


class Taken(NodeError):
    default_message = "Resource is taken"


class NodeTimeout(NodeError, TimeoutError):
    default_message = "Timed out"


class Fragmented(NodeError):
    default_message = "Fragmented data"