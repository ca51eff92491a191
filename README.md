# shardconf

Building blocks for a sharded key/value service whose shards move between
replica groups over time.

## Modules

- `shardconf.common`: the `Config` record, which maps each of `NSHARDS` (10)
  shards to a group id and each group id to its list of servers. Group id 0
  means "unassigned". Also holds `key2shard`, `ShardInfo` and
  `StaleRequestError`.
- `shardconf.controller`: `ShardController`, the configuration state machine.
  It applies `JoinOp`, `LeaveOp`, `MoveOp` and `QueryOp`, keeps every
  configuration it has produced and remembers each client's last request.
  A repeated request returns the earlier result. `handle` raises
  `StaleRequestError` for a request older than that client's last one.
  `rebalance` spreads shards evenly over the groups and moves as few shards as
  it can.
- `shardconf.ctrlclient`: `CtrlerClerk`, a client that sends each request to
  the controller servers in turn. A server refuses by raising `OSError`. When
  every server has refused, the clerk waits and starts another round, and it
  keeps going until one server answers or `kill()` is called.
- `shardconf.shardstate`: `ShardStore`, the key/value state of one replica
  group. It applies client operations (`ClientOp` with `Get`, `Put` or
  `Append`), configuration changes and incoming shards (`InstallShardArgs`).
  Duplicates are detected per client and per shard. `outgoing()` lists the
  shards waiting to be handed over. `snapshot()` and `restore()` serialise the
  whole state to JSON bytes.
- `shardconf.shardkv`: `ShardKV`, one replica of a group. It serves `Get`,
  `PutAppend` and `InstallShard` through `handle(method, args)` and applies
  committed entries through `deliver(index, op)`. Unless `background=False`
  is passed, two threads run beside it: one polls the controller for new
  configurations, the other sends departing shards to their new owners.

Every server object answers `handle(method, args)`. That means a
`ShardController` can be passed straight to a `CtrlerClerk` or a `ShardKV` as
one of its controller servers.

## Install

    pip install .

## Example

```python
from shardconf.common import key2shard
from shardconf.controller import ShardController, JoinOp, LeaveOp, QueryOp
from shardconf.ctrlclient import CtrlerClerk
from shardconf.shardstate import ShardStore, ClientOp

ctrl = ShardController()
ctrl.apply(JoinOp(client_id=1, seq=1, servers={1: ["x", "y", "z"], 2: ["a", "b", "c"]}))
ctrl.apply(LeaveOp(client_id=1, seq=2, gids=[1]))

latest = ctrl.latest()
print(latest.num, latest.shards)   # 2, every shard on group 2

first = ctrl.apply(QueryOp(client_id=1, seq=3, num=1))
print(first.groups)                # {1: ['x', 'y', 'z'], 2: ['a', 'b', 'c']}

clerk = CtrlerClerk([ctrl])
print(clerk.query(-1).num)         # 2

store = ShardStore(gid=2)
store.apply_config_change(clerk.query(1))
store.apply_client_op(ClientOp("Put", "k", client_id=7, seq=1, value="v"))
print(store.apply_client_op(ClientOp("Get", "k", client_id=7, seq=2)))
# Result(valid=True, value='v')
print(key2shard("k"))              # ord("k") % 10 == 7
```

`key2shard` takes the first byte of the key modulo `NSHARDS`. The empty key
maps to shard 0.

## What the package does not do

- There is no replicated log and no network transport. `ShardKV` takes a
  `start(command)` callable that returns `(index, is_leader)` and expects
  committed entries to come back through `deliver`. Without one it uses a
  local log that commits every command at once. `ShardController` is a single
  in-process state machine.
- There is no key/value client that routes keys to the group that owns them.
  A caller sends `ClientOp`s to a `ShardKV` replica itself. It has to look up
  the owning group in a `Config` and retry on another replica when it gets a
  `ConnectionError`, or when the `Result` is not valid.
- Snapshots are only handed to the `on_snapshot` callback. The package writes
  nothing to disk.

## Tests

    pip install .[test]
    pytest