"""Client for the replicated shard controller service."""

from __future__ import annotations

import secrets

from .ctrler_common import Err, JoinArgs, LeaveArgs, MoveArgs, QueryArgs

_RETRY = (Err.WRONG_LEADER, Err.TIMEOUT)


def nrand():
    """Return a random non-negative integer below 2**62."""
    return secrets.randbelow(1 << 62)


class Clerk:
    """Sends controller requests, trying each server in turn until one succeeds.

    Each server end must offer ``call(method, args)`` returning the reply, and
    raise ``ConnectionError`` when the request or its reply is lost.
    """

    def __init__(self, servers):
        self.servers = list(servers)
        self.leader_id = 0
        self.client_id = nrand()
        self.request_id = 0

    def _call(self, method, args):
        while True:
            try:
                reply = self.servers[self.leader_id].call(method, args)
            except ConnectionError:
                reply = None
            if reply is not None and reply.err not in _RETRY:
                return reply
            self.leader_id = (self.leader_id + 1) % len(self.servers)

    def query(self, num):
        """Fetch configuration ``num``, or the latest one when ``num`` is -1."""
        return self._call("ShardCtrler.Query", QueryArgs(num=num)).config

    def join(self, servers):
        """Add replica groups given as a mapping of gid to server names."""
        args = JoinArgs(servers=servers, client_id=self.client_id, request_id=self.request_id)
        self._call("ShardCtrler.Join", args)
        self.request_id += 1

    def leave(self, gids):
        """Remove the listed replica groups."""
        args = LeaveArgs(gids=list(gids), client_id=self.client_id, request_id=self.request_id)
        self._call("ShardCtrler.Leave", args)
        self.request_id += 1

    def move(self, shard, gid):
        """Hand one shard to the given group."""
        args = MoveArgs(shard=shard, gid=gid, client_id=self.client_id, request_id=self.request_id)
        self._call("ShardCtrler.Move", args)
        self.request_id += 1