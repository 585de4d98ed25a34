"""Shared types for the sharded key/value service: operations, commands and RPC messages."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

DEBUG = True

#: Seconds a server waits for a submitted command to be applied.
CLIENT_REQUEST_TIMEOUT = 0.5
#: Seconds between polls of the controller for a newer configuration.
FETCH_CONFIG_INTERVAL = 0.1
#: Seconds between attempts to pull incoming shards.
SHARD_MIGRATION_INTERVAL = 0.05
#: Seconds between attempts to garbage-collect migrated shards.
SHARD_GC_INTERVAL = 0.05

_log = logging.getLogger(__name__)


def dprintf(format, *args):
    """Log a debug message when debugging output is switched on."""
    if DEBUG:
        _log.debug(format, *args)


class Err(str, Enum):
    """Outcome of a key/value request."""

    OK = "OK"
    NO_KEY = "ErrNoKey"
    WRONG_GROUP = "ErrWrongGroup"
    WRONG_LEADER = "ErrWrongLeader"
    TIMEOUT = "ErrorTimeout"
    WRONG_CONFIG = "ErrWrongConfig"
    NOT_READY = "ErrNotReady"


class OperationType(IntEnum):
    """Kind of client operation."""

    PUT = 0
    APPEND = 1
    GET = 2


_OP_TYPES = {
    "Put": OperationType.PUT,
    "Append": OperationType.APPEND,
    "Get": OperationType.GET,
}


def get_op_type(op):
    """Map an operation name ("Put", "Append" or "Get") to its ``OperationType``."""
    try:
        return _OP_TYPES[op]
    except KeyError:
        raise ValueError(f"invalid operation type: {op!r}") from None


@dataclass
class Op:
    """A client operation as it is stored in the replicated log."""

    key: str
    op_type: OperationType
    value: str = ""
    client_id: int = 0
    request_id: int = 0


@dataclass
class OpReply:
    """Result of applying a command."""

    err: Err = Err.OK
    value: str = ""


@dataclass
class LastOperation:
    """The latest request applied for a client, kept for duplicate detection."""

    reply: OpReply
    request_id: int

    def clone(self):
        """Return an independent copy, reply included."""
        return LastOperation(
            reply=OpReply(err=self.reply.err, value=self.reply.value),
            request_id=self.request_id,
        )


class RaftCommandType(IntEnum):
    """Kind of command carried in the replicated log."""

    CLIENT_OPERATION = 0
    CONFIG_CHANGE = 1
    SHARD_MIGRATION = 2
    SHARD_GC = 3


@dataclass
class RaftCommand:
    """A log entry: its kind and the payload for that kind."""

    command_type: RaftCommandType
    command: Any


class ShardStatus(IntEnum):
    """Migration state of a shard held by a group."""

    NORMAL = 0
    MOVE_IN = 1
    MOVE_OUT = 2
    GC = 3


@dataclass
class ShardOperationArgs:
    config_num: int
    shard_ids: list[int] = field(default_factory=list)


@dataclass
class ShardOperationReply:
    err: Err = Err.OK
    config_num: int = 0
    shard_data: dict[int, dict[str, str]] = field(default_factory=dict)
    duplicate_table: dict[int, LastOperation] = field(default_factory=dict)


@dataclass
class PutAppendArgs:
    key: str
    value: str
    op: str
    client_id: int = 0
    request_id: int = 0


@dataclass
class PutAppendReply:
    err: Err = Err.OK


@dataclass
class GetArgs:
    key: str


@dataclass
class GetReply:
    err: Err = Err.OK
    value: str = ""