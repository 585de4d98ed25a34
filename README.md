# shardstore

A sharded key/value store made of two cooperating services:

* a **shard controller** that keeps a numbered history of configurations.
  Each configuration maps every one of the `NSHARDS` (10) shards to a
  replica group id. The controller rebalances shards with few moves whenever
  groups join or leave.
* **key/value group replicas**. Each one serves `Get`, `Put` and `Append`
  for the shards its group owns. When the configuration changes, groups
  hand shards over to each other.

Both services run on top of a consensus log that you supply. The package
does not contain one (see "What the package does not do" below).

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## The controller state machine

The balancing logic lives in `shardstore.ctrler_state.CtrlerStateMachine`
and can be used on its own:

```python
from shardstore.ctrler_state import CtrlerStateMachine

sm = CtrlerStateMachine()
sm.join({1: ["x", "y", "z"]})
sm.join({2: ["a", "b", "c"]})
config = sm.query(-1)        # latest configuration
print(config.num, config.shards, config.groups)

sm.move(0, 2)                # assign shard 0 to group 2
sm.leave([1])                # group 1's shards go to the least loaded groups
print(sm.query(1))           # any earlier configuration by number
```

The methods behave as follows:

* `query(num)` returns a copy of configuration `num`. If `num` is negative
  or beyond the history, it returns the latest configuration.
* `join` adds the given groups and then moves shards one at a time, from
  the most loaded group to the least loaded one. It stops when every shard
  is off gid 0 and the loads differ by at most one. Ties go to the smaller
  gid.
* `leave` removes the given groups and gives each of their shards to the
  least loaded remaining group. If no groups remain, every shard goes back
  to gid 0.
* `move` raises `IndexError` for a shard number outside `0..NSHARDS-1`.

The helpers `gid_with_max_shards` and `gid_with_min_shards` are exported as
well. The `Config` dataclass has the fields `num`, `shards` and `groups`,
and a `clone()` method. `default_config()` returns configuration #0. Both
live in `shardstore.ctrler_common`.

## The replicated controller

Call `shardstore.ctrler_server.start_server(rf, apply_ch)` to start a
controller replica. It expects the following:

* `rf` is the consensus peer. `rf.start(command)` returns
  `(index, term, is_leader)`.
* `rf.get_state()` returns `(term, is_leader)`.
* `rf.kill()` stops the peer.
* `apply_ch` is a `queue.Queue` that receives
  `shardstore.ctrler_common.ApplyMsg` items for committed entries.

The replica's `join`, `leave`, `move` and `query` methods take the argument
dataclasses from `ctrler_common` (`JoinArgs`, `LeaveArgs`, `MoveArgs`,
`QueryArgs`). They return the matching reply dataclasses. The `err` field
of a reply is one of these:

* `Err.OK`.
* `Err.WRONG_LEADER`.
* `Err.TIMEOUT`, if the command was not applied within 0.5 s.

A Join, Leave or Move is ignored if the same client already sent the same
or a later request id. In that case the replica returns the recorded
result.

`shardstore.ctrler_client.Clerk(servers)` talks to the controller.

* Each server end must offer `call(method, args)`. This method returns the
  reply, or raises `ConnectionError` if the message is lost.
* The clerk calls it with the method names `"ShardCtrler.Query"`,
  `"ShardCtrler.Join"`, `"ShardCtrler.Leave"` and `"ShardCtrler.Move"`.
* It retries across the servers until a reply arrives whose error is
  neither wrong-leader nor timeout.

## The key/value groups

The following call starts one replica of group `gid`:

```
shardstore.kv_server.start_server(rf, apply_ch, persister, maxraftstate,
                                  gid, ctrlers, make_end)
```

Its parameters are:

* `rf`, the consensus peer. It must offer `start`, `get_state`, `kill` and
  `snapshot(index, data)`.
* `apply_ch`, the queue of `ApplyMsg` items for committed entries.
* `persister`, which must offer `raft_state_size()` and `read_snapshot()`.
* `maxraftstate`, the persisted-log size that triggers a snapshot.
* `gid`, the group id this replica belongs to.
* `ctrlers`, the ends of the controller service.
* `make_end(name)`, which turns a server name into an end with
  `call(method, args)`.

The replica runs background threads that do the following:

* **Fetch configurations.** It polls the controller for the next
  configuration once every shard it holds is in the normal state.
* **Pull shards.** It fetches incoming shards from their previous owners.
  The owners serve them through `get_shards_data`.
* **Collect garbage.** It tells previous owners to drop the shards it has
  received. The owners handle this through `delete_shards_data`.
* **Snapshot.** It takes a snapshot once `persister.raft_state_size()`
  reaches `maxraftstate`. A value of `-1` disables snapshots.

Snapshots are the pickled shard data, duplicate table and configurations.
If a snapshot cannot be decoded, the replica raises `ValueError`.

The replica's `get` and `put_append` methods take `GetArgs` and
`PutAppendArgs` from `shardstore.kv_common`. If the key's shard is not
currently served by this group, they answer `Err.WRONG_GROUP`.

`shardstore.kv_client.Clerk(ctrlers, make_end)` is the client:

```python
clerk.put("k", "v")
clerk.append("k", "w")
clerk.get("k")               # "vw"; "" for a missing key
```

It sends `"ShardKV.Get"` and `"ShardKV.PutAppend"` calls to the group that
owns the key. When a call fails, it fetches the latest configuration from
the controller and retries. It keeps retrying until the call succeeds.

`key2shard(key)` gives a key's shard: the first byte of the UTF-8 encoded
key modulo `NSHARDS`, or shard 0 for the empty key.

Each shard's data is held in a
`shardstore.kv_state.MemoryKVStateMachine`. It stores the shard's
key/value pairs and its migration `status`
(`ShardStatus.NORMAL`, `MOVE_IN`, `MOVE_OUT` or `GC`).

## What the package does not do

* **No consensus layer.** The package contains no consensus implementation
  and no persister. You must supply the `rf`, `apply_ch` and `persister`
  objects described above.
* **No network or RPC transport.** Ends are any objects with
  `call(method, args)`. Routing a method name such as
  `"ShardKV.GetShardsData"` to the matching method of a server object
  (`get_shards_data`) is left to the transport you supply.
* **No command-line program.** The package provides no command to start the
  services.