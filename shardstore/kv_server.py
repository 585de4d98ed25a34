"""Replica of one key/value group: serves its shards and follows configuration changes."""

from __future__ import annotations

import pickle
import queue
import threading
from contextlib import suppress

from .ctrler_client import Clerk as CtrlerClerk
from .ctrler_common import NSHARDS, default_config
from .kv_client import key2shard
from .kv_common import (
    CLIENT_REQUEST_TIMEOUT,
    FETCH_CONFIG_INTERVAL,
    SHARD_GC_INTERVAL,
    SHARD_MIGRATION_INTERVAL,
    Err,
    GetReply,
    LastOperation,
    Op,
    OperationType,
    OpReply,
    PutAppendReply,
    RaftCommand,
    RaftCommandType,
    ShardOperationArgs,
    ShardOperationReply,
    ShardStatus,
    dprintf,
    get_op_type,
)
from .kv_state import MemoryKVStateMachine

_POLL_INTERVAL = 0.05


class ShardKV:
    """A replica of one key/value group.

    ``rf`` is the consensus peer: ``start(command)`` returns ``(index, term,
    is_leader)``, ``get_state()`` returns ``(term, is_leader)``,
    ``snapshot(index, data)`` hands over a snapshot and ``kill()`` stops it.
    Committed entries arrive as ``ApplyMsg`` items on ``apply_ch``.
    ``persister`` offers ``raft_state_size()`` and ``read_snapshot()``.
    ``ctrlers`` are ends of the controller service and ``make_end(name)`` turns
    a server name into an end offering ``call(method, args)``.
    """

    def __init__(self, rf, apply_ch, persister, maxraftstate, gid, ctrlers, make_end):
        self.gid = gid
        self.maxraftstate = maxraftstate
        self._rf = rf
        self._apply_ch = apply_ch
        self._persister = persister
        self._make_end = make_end
        self._lock = threading.Lock()
        self._dead = threading.Event()
        self._last_applied = 0
        self.shards = {}
        self._notify_chans = {}
        self._duplicates = {}
        self.current_config = default_config()
        self.pre_config = default_config()
        self._mck = CtrlerClerk(ctrlers)
        self._restore_from_snapshot(persister.read_snapshot())
        self._threads = [
            threading.Thread(target=loop, daemon=True)
            for loop in (self._apply_loop, self._fetch_config_loop,
                         self._migration_loop, self._gc_loop)
        ]

    # -- request handling -------------------------------------------------

    def _is_leader(self):
        _term, is_leader = self._rf.get_state()
        return is_leader

    def _match_group(self, key):
        shard = key2shard(key)
        status = self.shards[shard].status
        return (self.current_config.shards[shard] == self.gid
                and status in (ShardStatus.NORMAL, ShardStatus.GC))

    def _is_duplicate(self, client_id, request_id):
        last = self._duplicates.get(client_id)
        return last is not None and last.request_id >= request_id

    def _notify_chan(self, index):
        return self._notify_chans.setdefault(index, queue.Queue(maxsize=1))

    def config_command(self, command):
        """Submit a command to the log and wait for the result of applying it."""
        index, _term, is_leader = self._rf.start(command)
        if not is_leader:
            return OpReply(err=Err.WRONG_LEADER)

        with self._lock:
            chan = self._notify_chan(index)
        try:
            applied = chan.get(timeout=CLIENT_REQUEST_TIMEOUT)
            reply = OpReply(err=applied.err, value=applied.value)
        except queue.Empty:
            reply = OpReply(err=Err.TIMEOUT)

        with self._lock:
            self._notify_chans.pop(index, None)
        return reply

    def get(self, args):
        """Serve a Get request for a key in a shard this group holds."""
        with self._lock:
            if not self._match_group(args.key):
                return GetReply(err=Err.WRONG_GROUP)
        reply = self.config_command(RaftCommand(
            RaftCommandType.CLIENT_OPERATION, Op(key=args.key, op_type=OperationType.GET)
        ))
        return GetReply(err=reply.err, value=reply.value)

    def put_append(self, args):
        """Serve a Put or Append request, answering repeated requests from the table."""
        with self._lock:
            if not self._match_group(args.key):
                return PutAppendReply(err=Err.WRONG_GROUP)
            if self._is_duplicate(args.client_id, args.request_id):
                return PutAppendReply(err=self._duplicates[args.client_id].reply.err)
        reply = self.config_command(RaftCommand(
            RaftCommandType.CLIENT_OPERATION,
            Op(
                key=args.key,
                value=args.value,
                op_type=get_op_type(args.op),
                client_id=args.client_id,
                request_id=args.request_id,
            ),
        ))
        return PutAppendReply(err=reply.err)

    def get_shards_data(self, args):
        """Hand out copies of the requested shards and of the duplicate table."""
        if not self._is_leader():
            return ShardOperationReply(err=Err.WRONG_LEADER)
        with self._lock:
            if self.current_config.num < args.config_num:
                return ShardOperationReply(err=Err.NOT_READY)
            shard_data = {sid: self.shards[sid].copy_data() for sid in args.shard_ids}
            duplicates = {cid: op.clone() for cid, op in self._duplicates.items()}
        return ShardOperationReply(
            err=Err.OK,
            config_num=args.config_num,
            shard_data=shard_data,
            duplicate_table=duplicates,
        )

    def delete_shards_data(self, args):
        """Drop shards that another group has taken over."""
        if not self._is_leader():
            return ShardOperationReply(err=Err.WRONG_LEADER)
        with self._lock:
            if self.current_config.num > args.config_num:
                return ShardOperationReply(err=Err.OK)
        reply = self.config_command(RaftCommand(RaftCommandType.SHARD_GC, args))
        return ShardOperationReply(err=reply.err)

    # -- applying committed entries ---------------------------------------

    def _apply_loop(self):
        while not self.killed():
            try:
                msg = self._apply_ch.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if msg.command_valid:
                self._apply_command(msg)
            elif msg.snapshot_valid:
                with self._lock:
                    if self._last_applied < msg.snapshot_index:
                        self._last_applied = msg.snapshot_index
                        self._restore_from_snapshot(msg.snapshot)
            else:
                raise ValueError(f"invalid apply message: {msg!r}")

    def _apply_command(self, msg):
        with self._lock:
            if msg.command_index <= self._last_applied:
                return
            self._last_applied = msg.command_index

            command = msg.command
            if command.command_type == RaftCommandType.CLIENT_OPERATION:
                reply = self._apply_client_operation(command.command)
            else:
                reply = self._handle_config_change(command)

            if self._is_leader():
                with suppress(queue.Full):
                    self._notify_chan(msg.command_index).put_nowait(reply)

            if (self.maxraftstate != -1
                    and self._persister.raft_state_size() >= self.maxraftstate):
                self._make_snapshot(msg.command_index)

    def _apply_client_operation(self, op):
        if not self._match_group(op.key):
            return OpReply(err=Err.WRONG_GROUP)
        if op.op_type != OperationType.GET and self._is_duplicate(op.client_id, op.request_id):
            return self._duplicates[op.client_id].reply
        reply = self._apply_to_state_machine(op, key2shard(op.key))
        if op.op_type != OperationType.GET:
            self._duplicates[op.client_id] = LastOperation(reply=reply, request_id=op.request_id)
        return reply

    def _apply_to_state_machine(self, op, shard_id):
        shard = self.shards[shard_id]
        if op.op_type == OperationType.GET:
            value, err = shard.get(op.key)
            return OpReply(err=err, value=value)
        if op.op_type == OperationType.PUT:
            return OpReply(err=shard.put(op.key, op.value))
        if op.op_type == OperationType.APPEND:
            return OpReply(err=shard.append(op.key, op.value))
        raise ValueError(f"invalid operation type: {op.op_type!r}")

    def _handle_config_change(self, command):
        if command.command_type == RaftCommandType.CONFIG_CHANGE:
            return self._apply_new_config(command.command)
        if command.command_type == RaftCommandType.SHARD_MIGRATION:
            return self._apply_shard_migration(command.command)
        if command.command_type == RaftCommandType.SHARD_GC:
            return self._apply_shard_gc(command.command)
        raise ValueError(f"invalid command type: {command.command_type!r}")

    def _apply_new_config(self, new_config):
        if self.current_config.num + 1 != new_config.num:
            return OpReply(err=Err.WRONG_CONFIG)
        for i in range(NSHARDS):
            old_gid = self.current_config.shards[i]
            new_gid = new_config.shards[i]
            if old_gid != self.gid and new_gid == self.gid and old_gid != 0:
                self.shards[i].status = ShardStatus.MOVE_IN
            if old_gid == self.gid and new_gid != self.gid and new_gid != 0:
                self.shards[i].status = ShardStatus.MOVE_OUT
        self.pre_config = self.current_config
        self.current_config = new_config
        return OpReply(err=Err.OK)

    def _apply_shard_migration(self, reply):
        if reply.config_num != self.current_config.num:
            return OpReply(err=Err.WRONG_CONFIG)
        for shard_id, data in reply.shard_data.items():
            shard = self.shards[shard_id]
            if shard.status != ShardStatus.MOVE_IN:
                break
            shard.kv.update(data)
            shard.status = ShardStatus.GC
        for client_id, last in reply.duplicate_table.items():
            known = self._duplicates.get(client_id)
            if known is None or known.request_id < last.request_id:
                self._duplicates[client_id] = last
        return OpReply(err=Err.OK)

    def _apply_shard_gc(self, args):
        if args.config_num == self.current_config.num:
            for shard_id in args.shard_ids:
                status = self.shards[shard_id].status
                if status == ShardStatus.GC:
                    self.shards[shard_id].status = ShardStatus.NORMAL
                elif status == ShardStatus.MOVE_OUT:
                    self.shards[shard_id] = MemoryKVStateMachine()
                else:
                    break
        return OpReply(err=Err.OK)

    # -- snapshots ---------------------------------------------------------

    def _make_snapshot(self, index):
        data = pickle.dumps(
            (self.shards, self._duplicates, self.current_config, self.pre_config)
        )
        self._rf.snapshot(index, data)

    def _restore_from_snapshot(self, snapshot):
        if not snapshot:
            for i in range(NSHARDS):
                self.shards.setdefault(i, MemoryKVStateMachine())
            return
        try:
            shards, duplicates, current, previous = pickle.loads(snapshot)
        except Exception as exc:
            raise ValueError("failed to decode snapshot") from exc
        self.shards = shards
        self._duplicates = duplicates
        self.current_config = current
        self.pre_config = previous

    # -- background tasks --------------------------------------------------

    def _fetch_config_loop(self):
        while not self.killed():
            if self._is_leader():
                with self._lock:
                    need_fetch = all(s.status == ShardStatus.NORMAL for s in self.shards.values())
                    current_num = self.current_config.num
                if need_fetch:
                    new_config = self._mck.query(current_num + 1)
                    if new_config.num == current_num + 1:
                        dprintf("ShardKV %s: fetched config %s", self.gid, new_config.num)
                        self.config_command(
                            RaftCommand(RaftCommandType.CONFIG_CHANGE, new_config)
                        )
            self._dead.wait(FETCH_CONFIG_INTERVAL)

    def _shards_by_status(self, status):
        gid_to_shards = {}
        for shard_id in sorted(self.shards):
            if self.shards[shard_id].status == status:
                gid = self.pre_config.shards[shard_id]
                if gid != 0:
                    gid_to_shards.setdefault(gid, []).append(shard_id)
        return gid_to_shards

    def _run_for_groups(self, status, worker):
        with self._lock:
            tasks = [
                (list(self.pre_config.groups.get(gid, [])), self.current_config.num, shard_ids)
                for gid, shard_ids in self._shards_by_status(status).items()
            ]
        threads = [threading.Thread(target=worker, args=task, daemon=True) for task in tasks]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def _call(self, server, method, args):
        try:
            return self._make_end(server).call(method, args)
        except ConnectionError:
            return None

    def _pull_shards(self, servers, config_num, shard_ids):
        args = ShardOperationArgs(config_num=config_num, shard_ids=shard_ids)
        for server in servers:
            reply = self._call(server, "ShardKV.GetShardsData", args)
            if reply is not None and reply.err == Err.OK:
                self.config_command(RaftCommand(RaftCommandType.SHARD_MIGRATION, reply))

    def _release_shards(self, servers, config_num, shard_ids):
        args = ShardOperationArgs(config_num=config_num, shard_ids=shard_ids)
        for server in servers:
            reply = self._call(server, "ShardKV.DeleteShardsData", args)
            if reply is not None and reply.err == Err.OK:
                self.config_command(RaftCommand(RaftCommandType.SHARD_GC, args))

    def _migration_loop(self):
        while not self.killed():
            if self._is_leader():
                self._run_for_groups(ShardStatus.MOVE_IN, self._pull_shards)
            self._dead.wait(SHARD_MIGRATION_INTERVAL)

    def _gc_loop(self):
        while not self.killed():
            if self._is_leader():
                self._run_for_groups(ShardStatus.GC, self._release_shards)
            self._dead.wait(SHARD_GC_INTERVAL)

    # -- lifecycle ---------------------------------------------------------

    def kill(self):
        """Stop this replica and its consensus peer."""
        self._dead.set()
        self._rf.kill()

    def killed(self):
        return self._dead.is_set()


def start_server(rf, apply_ch, persister, maxraftstate, gid, ctrlers, make_end):
    """Create a group replica, restore its snapshot and start its background tasks.

    With ``maxraftstate`` of -1 no snapshots are taken.
    """
    server = ShardKV(rf, apply_ch, persister, maxraftstate, gid, ctrlers, make_end)
    for thread in server._threads:
        thread.start()
    return server