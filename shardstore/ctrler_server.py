"""Replicated shard controller server built on a consensus log."""

from __future__ import annotations

import queue
import threading
from contextlib import suppress

from .ctrler_common import (
    TIMEOUT,
    Err,
    JoinReply,
    LastOperation,
    LeaveReply,
    MoveReply,
    Op,
    Operation,
    OperationReply,
    QueryReply,
    default_config,
    dprintf,
)
from .ctrler_state import CtrlerStateMachine

_POLL_INTERVAL = 0.05


class ShardCtrler:
    """A controller replica.

    ``rf`` is the consensus peer: ``start(command)`` returns ``(index, term,
    is_leader)``, ``get_state()`` returns ``(term, is_leader)`` and ``kill()``
    stops it. Committed commands arrive as ``ApplyMsg`` items on ``apply_ch``.
    """

    def __init__(self, rf, apply_ch):
        self._rf = rf
        self._apply_ch = apply_ch
        self._lock = threading.Lock()
        self._dead = threading.Event()
        self._last_applied = 0
        self._state_machine = CtrlerStateMachine()
        self._notify_chans = {}
        self._duplicates = {}
        self._applier = threading.Thread(target=self._apply_loop, daemon=True)

    def _is_duplicate(self, client_id, request_id):
        last = self._duplicates.get(client_id)
        return last is not None and last.request_id >= request_id

    def _notify_chan(self, index):
        return self._notify_chans.setdefault(index, queue.Queue(maxsize=1))

    def command(self, op):
        """Submit an operation to the log and wait for its result."""
        with self._lock:
            if op.operation != Operation.QUERY and self._is_duplicate(op.client_id, op.request_id):
                return OperationReply(err=self._duplicates[op.client_id].reply.err)

        index, _term, is_leader = self._rf.start(op)
        if not is_leader:
            return OperationReply(err=Err.WRONG_LEADER)

        with self._lock:
            chan = self._notify_chan(index)

        try:
            applied = chan.get(timeout=TIMEOUT)
            reply = OperationReply(err=applied.err, config=applied.config)
        except queue.Empty:
            reply = OperationReply(err=Err.TIMEOUT)

        dprintf("ShardCtrler.command: %s, %s", op, reply)

        with self._lock:
            self._notify_chans.pop(index, None)
        return reply

    def join(self, args):
        reply = self.command(Op(
            operation=Operation.JOIN,
            servers=args.servers,
            client_id=args.client_id,
            request_id=args.request_id,
        ))
        return JoinReply(err=reply.err)

    def leave(self, args):
        reply = self.command(Op(
            operation=Operation.LEAVE,
            gids=list(args.gids),
            client_id=args.client_id,
            request_id=args.request_id,
        ))
        return LeaveReply(err=reply.err)

    def move(self, args):
        reply = self.command(Op(
            operation=Operation.MOVE,
            shard=args.shard,
            gid=args.gid,
            client_id=args.client_id,
            request_id=args.request_id,
        ))
        return MoveReply(err=reply.err)

    def query(self, args):
        reply = self.command(Op(operation=Operation.QUERY, num=args.num))
        return QueryReply(err=reply.err, config=reply.config)

    def _apply_to_state_machine(self, op):
        machine = self._state_machine
        if op.operation == Operation.JOIN:
            machine.join(op.servers)
        elif op.operation == Operation.LEAVE:
            machine.leave(op.gids)
        elif op.operation == Operation.MOVE:
            machine.move(op.shard, op.gid)
        elif op.operation == Operation.QUERY:
            return OperationReply(err=Err.OK, config=machine.query(op.num))
        return OperationReply(err=Err.OK, config=default_config())

    def _apply_loop(self):
        while not self.killed():
            try:
                msg = self._apply_ch.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            dprintf("ShardCtrler.applier: %s", msg)
            if not msg.command_valid:
                continue
            with self._lock:
                if msg.command_index <= self._last_applied:
                    continue
                self._last_applied = msg.command_index
                op = msg.command

                if op.operation != Operation.QUERY and self._is_duplicate(op.client_id, op.request_id):
                    reply = self._duplicates[op.client_id].reply
                else:
                    reply = self._apply_to_state_machine(op)
                    if op.operation != Operation.QUERY:
                        self._duplicates[op.client_id] = LastOperation(
                            request_id=op.request_id, reply=reply
                        )

                _term, is_leader = self._rf.get_state()
                if is_leader:
                    with suppress(queue.Full):
                        self._notify_chan(msg.command_index).put_nowait(reply)

    def kill(self):
        """Stop this replica and its consensus peer."""
        self._dead.set()
        self._rf.kill()

    def killed(self):
        return self._dead.is_set()

    def raft(self):
        """Return the consensus peer this replica runs on."""
        return self._rf


def start_server(rf, apply_ch):
    """Create a controller replica over ``rf`` and start applying committed commands."""
    server = ShardCtrler(rf, apply_ch)
    server._applier.start()
    return server