"""Shared types for the shard controller: configurations, operations and RPC messages."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

DEBUG = False

#: The number of shards.
NSHARDS = 10

#: Seconds a server waits for a submitted command to be applied.
TIMEOUT = 0.5

_log = logging.getLogger(__name__)


def dprintf(format, *args):
    """Log a debug message when debugging output is switched on."""
    if DEBUG:
        _log.debug(format, *args)


class Err(str, Enum):
    """Outcome of a controller request."""

    OK = "OK"
    NO_KEY = "ErrNoKey"
    WRONG_LEADER = "ErrWrongLeader"
    TIMEOUT = "ErrTimeout"


class Operation(IntEnum):
    """Kind of controller operation carried in the replicated log."""

    JOIN = 0
    LEAVE = 1
    MOVE = 2
    QUERY = 3


@dataclass
class Config:
    """An assignment of shards to replica groups.

    ``shards[i]`` is the gid owning shard ``i``; ``groups`` maps a gid to its servers.
    Gid 0 is the invalid group.
    """

    num: int = 0
    shards: list[int] = field(default_factory=lambda: [0] * NSHARDS)
    groups: dict[int, list[str]] = field(default_factory=dict)

    def clone(self):
        """Return an independent copy of this configuration."""
        return Config(
            num=self.num,
            shards=list(self.shards),
            groups={gid: list(servers) for gid, servers in self.groups.items()},
        )


def default_config():
    """Return configuration #0: no groups, every shard on gid 0."""
    return Config()


@dataclass
class Op:
    """A controller command as it is stored in the replicated log."""

    operation: Operation
    servers: dict[int, list[str]] = field(default_factory=dict)
    gids: list[int] = field(default_factory=list)
    shard: int = 0
    gid: int = 0
    num: int = 0
    client_id: int = 0
    request_id: int = 0


@dataclass
class OperationReply:
    """Result of applying an operation to the controller state machine."""

    err: Err = Err.OK
    config: Config = field(default_factory=default_config)


@dataclass
class LastOperation:
    """The latest request applied for a client, kept for duplicate detection."""

    request_id: int
    reply: OperationReply


@dataclass
class JoinArgs:
    servers: dict[int, list[str]]
    client_id: int = 0
    request_id: int = 0


@dataclass
class JoinReply:
    err: Err = Err.OK
    wrong_leader: bool = False


@dataclass
class LeaveArgs:
    gids: list[int]
    client_id: int = 0
    request_id: int = 0


@dataclass
class LeaveReply:
    err: Err = Err.OK
    wrong_leader: bool = False


@dataclass
class MoveArgs:
    shard: int
    gid: int
    client_id: int = 0
    request_id: int = 0


@dataclass
class MoveReply:
    err: Err = Err.OK
    wrong_leader: bool = False


@dataclass
class QueryArgs:
    num: int


@dataclass
class QueryReply:
    err: Err = Err.OK
    config: Config = field(default_factory=default_config)
    wrong_leader: bool = False


@dataclass
class ApplyMsg:
    """A message delivered by the consensus layer on its apply channel."""

    command_valid: bool = False
    command: Any = None
    command_index: int = 0
    snapshot_valid: bool = False
    snapshot: bytes = b""
    snapshot_term: int = 0
    snapshot_index: int = 0