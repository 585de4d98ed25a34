"""Client for the sharded key/value service."""

from __future__ import annotations

import secrets
import time

from .ctrler_client import Clerk as CtrlerClerk
from .ctrler_common import NSHARDS, default_config
from .kv_common import Err, GetArgs, PutAppendArgs

__all__ = ["Clerk", "key2shard", "nrand"]

_SWITCH_SERVER = (Err.WRONG_LEADER, Err.TIMEOUT)


def key2shard(key):
    """Return the shard a key belongs to, chosen by its first byte."""
    encoded = key.encode("utf-8")
    shard = encoded[0] if encoded else 0
    return shard % NSHARDS


def nrand():
    """Return a random non-negative integer below 2**62."""
    return secrets.randbelow(1 << 62)


class Clerk:
    """Finds the group owning a key through the controller and sends it requests.

    ``make_end(name)`` turns a server name from a configuration into an end
    offering ``call(method, args)``, which returns the reply or raises
    ``ConnectionError`` when the request or its reply is lost.
    """

    retry_interval = 0.1

    def __init__(self, ctrlers, make_end):
        self.sm = CtrlerClerk(ctrlers)
        self.config = default_config()
        self.make_end = make_end
        self.leader_ids = {}
        self.client_id = nrand()
        self.request_id = 0

    def _send_to_group(self, method, args, done):
        """Try the servers of the key's group; return the reply once ``done`` accepts it."""
        gid = self.config.shards[key2shard(args.key)]
        servers = self.config.groups.get(gid)
        if not servers:
            return None
        self.leader_ids.setdefault(gid, 0)
        first_leader = self.leader_ids[gid]
        while True:
            end = self.make_end(servers[self.leader_ids[gid]])
            try:
                reply = end.call(method, args)
            except ConnectionError:
                reply = None
            if reply is not None and done(reply.err):
                return reply
            if reply is not None and reply.err == Err.WRONG_GROUP:
                return None
            if reply is None or reply.err in _SWITCH_SERVER:
                self.leader_ids[gid] = (self.leader_ids[gid] + 1) % len(servers)
                if self.leader_ids[gid] == first_leader:
                    return None

    def _request(self, method, args, done):
        while True:
            reply = self._send_to_group(method, args, done)
            if reply is not None:
                return reply
            time.sleep(self.retry_interval)
            self.config = self.sm.query(-1)

    def get(self, key):
        """Return the value of ``key``, or "" if it does not exist; retries forever."""
        reply = self._request(
            "ShardKV.Get", GetArgs(key=key), lambda err: err in (Err.OK, Err.NO_KEY)
        )
        return reply.value

    def put_append(self, key, value, op):
        """Send a "Put" or "Append" request; retries forever until it succeeds."""
        args = PutAppendArgs(
            key=key,
            value=value,
            op=op,
            client_id=self.client_id,
            request_id=self.request_id,
        )
        self._request("ShardKV.PutAppend", args, lambda err: err == Err.OK)
        self.request_id += 1

    def put(self, key, value):
        self.put_append(key, value, "Put")

    def append(self, key, value):
        self.put_append(key, value, "Append")