"""State machine of one replica group of the sharded key/value store."""

from __future__ import annotations

import itertools
import json
import secrets
import threading
from dataclasses import dataclass, field
from typing import Any

from .common import Config, ShardInfo, key2shard

GET = "Get"
PUT = "Put"
APPEND = "Append"
_CLIENT_OPS = (GET, PUT, APPEND)


@dataclass(frozen=True)
class Result:
    """Outcome of a client operation; invalid when this group can't serve the key."""

    valid: bool
    value: str = ""


@dataclass(frozen=True)
class DedupKey:
    """Deduplication is tracked per client and per shard."""

    client_id: int
    shard: int


@dataclass(frozen=True)
class ClientOp:
    """A Get, Put or Append from a client."""

    op: str
    key: str
    client_id: int
    seq: int
    value: str = ""

    def __post_init__(self) -> None:
        if self.op not in _CLIENT_OPS:
            raise ValueError(f"unknown client operation {self.op!r}")

    @property
    def shard(self) -> int:
        return key2shard(self.key)


@dataclass
class InstallShardArgs:
    """One shard's data and dedup entries, as handed over for config ``num``."""

    shard: int
    num: int
    data: dict[str, str] = field(default_factory=dict)
    dedup: dict[DedupKey, tuple[int, str]] = field(default_factory=dict)
    from_gid: int = 0
    client_id: int = 0
    seq: int = 0

    @property
    def shard_info(self) -> ShardInfo:
        return ShardInfo(self.shard, self.num)


@dataclass
class ShardTransfer:
    """A shard waiting to be sent, with the servers of the group receiving it."""

    args: InstallShardArgs
    servers: list[str]


class ShardStore:
    """Key/value state of a replica group, and its part in shard migration.

    Commands are applied in log order. A configuration change can only be
    applied once every shard expected from the previous change has arrived.
    """

    def __init__(
        self, gid: int, config: Config | None = None, *, client_id: int | None = None
    ) -> None:
        self.gid = gid
        self.config = (config if config is not None else Config.initial()).copy()
        self.state: dict[str, str] = {}
        self.dedup: dict[DedupKey, tuple[int, str]] = {}
        # shard -> group id it is expected from
        self.shards_to_recv: dict[int, int] = {}
        # shard data that arrived before this group reached its config
        self.pending_shards: dict[ShardInfo, InstallShardArgs] = {}
        self.last_applied = 0
        self.client_id = secrets.randbelow(1 << 62) if client_id is None else client_id
        self._shards_to_send: dict[ShardInfo, ShardTransfer] = {}
        self._seq = itertools.count(1)
        self._lock = threading.RLock()

    def apply_client_op(self, op: ClientOp) -> Result:
        """Apply a committed client operation if this group serves its shard now."""
        with self._lock:
            shard = op.shard
            if self.config.shards[shard] != self.gid or shard in self.shards_to_recv:
                return Result(False)
            dkey = DedupKey(op.client_id, shard)
            entry = self.dedup.get(dkey)
            if entry is not None and entry[0] == op.seq:
                return Result(True, entry[1])
            result = ""
            if op.op == PUT:
                self.state[op.key] = op.value
            elif op.op == APPEND:
                self.state[op.key] = self.state.get(op.key, "") + op.value
            else:
                result = self.state.get(op.key, "")
            self.dedup[dkey] = (op.seq, result)
            return Result(True, result)

    def apply_config_change(self, config: Config) -> bool:
        """Move to ``config`` if it is the next one and no shard is still awaited.

        Shards leaving this group are cut out of the state and queued for
        sending. Returns whether the change was applied.
        """
        with self._lock:
            active = self.config
            if config.num != active.num + 1 or self.shards_to_recv:
                return False
            leaving: list[int] = []
            for shard, (old, new) in enumerate(zip(active.shards, config.shards)):
                if old == self.gid and new != self.gid:
                    leaving.append(shard)
                if old not in (0, self.gid) and new == self.gid:
                    early = self.pending_shards.pop(ShardInfo(shard, config.num), None)
                    if early is not None:
                        self._absorb(early)
                    else:
                        self.shards_to_recv[shard] = old
            if leaving:
                self._queue_transfers(leaving, config)
            self.config = config.copy()
            return True

    def apply_install_shard(self, args: InstallShardArgs) -> None:
        """Take in shard data sent by another group.

        Data for an older config is dropped, data for an awaited shard goes
        live, a repeat of an installed shard is ignored, and data for a
        config not reached yet is kept for later.
        """
        with self._lock:
            cfg = self.config
            if args.num < cfg.num:
                return
            if cfg.shards[args.shard] == self.gid:
                source = self.shards_to_recv.get(args.shard)
                if source is None:
                    return
                if args.num == cfg.num:
                    if source != args.from_gid:
                        raise RuntimeError(
                            f"expected shard {args.shard} from group {source}, "
                            f"got it from group {args.from_gid}"
                        )
                    self._absorb(args)
                    del self.shards_to_recv[args.shard]
                    return
            elif args.num == cfg.num:
                raise RuntimeError(
                    f"shard {args.shard} for config {args.num} sent to group "
                    f"{self.gid}, which does not serve it"
                )
            self.pending_shards[args.shard_info] = args

    def outgoing(self) -> list[ShardTransfer]:
        """Shards still to be sent to their new owners."""
        with self._lock:
            return list(self._shards_to_send.values())

    def acknowledge_sent(self, info: ShardInfo) -> bool:
        """Forget a delivered shard; returns True when nothing is left to send."""
        with self._lock:
            self._shards_to_send.pop(info, None)
            return not self._shards_to_send

    def snapshot(self) -> bytes:
        """Serialise everything the state machine needs to resume."""
        with self._lock:
            doc = {
                "gid": self.gid,
                "last_applied": self.last_applied,
                "config": _config_to_json(self.config),
                "shards_to_recv": sorted(self.shards_to_recv.items()),
                "state": self.state,
                "dedup": _dedup_to_json(self.dedup),
                "pending_shards": [_args_to_json(a) for a in self.pending_shards.values()],
                "shards_to_send": [
                    {"args": _args_to_json(t.args), "servers": t.servers}
                    for t in self._shards_to_send.values()
                ],
            }
            return json.dumps(doc, sort_keys=True).encode("utf-8")

    @classmethod
    def restore(cls, data: bytes) -> ShardStore:
        """Rebuild a store from snapshot() output; raises ValueError if corrupt.

        The rebuilt store gets a fresh client id of its own.
        """
        if not data:
            raise ValueError("empty snapshot")
        try:
            doc = json.loads(data.decode("utf-8"))
            store = cls(doc["gid"], _config_from_json(doc["config"]))
            store.last_applied = int(doc["last_applied"])
            store.shards_to_recv = {int(s): int(g) for s, g in doc["shards_to_recv"]}
            store.state = {str(k): str(v) for k, v in doc["state"].items()}
            store.dedup = _dedup_from_json(doc["dedup"])
            for raw in doc["pending_shards"]:
                args = _args_from_json(raw)
                store.pending_shards[args.shard_info] = args
            for raw in doc["shards_to_send"]:
                args = _args_from_json(raw["args"])
                store._shards_to_send[args.shard_info] = ShardTransfer(
                    args, [str(s) for s in raw["servers"]]
                )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ValueError("corrupt snapshot") from exc
        return store

    def _absorb(self, args: InstallShardArgs) -> None:
        self.dedup.update(args.dedup)
        self.state.update(args.data)

    def _queue_transfers(self, shards: list[int], config: Config) -> None:
        moving = set(shards)
        data: dict[int, dict[str, str]] = {s: {} for s in shards}
        dedup: dict[int, dict[DedupKey, tuple[int, str]]] = {s: {} for s in shards}
        for key in [k for k in self.state if key2shard(k) in moving]:
            data[key2shard(key)][key] = self.state.pop(key)
        for dkey in [k for k in self.dedup if k.shard in moving]:
            dedup[dkey.shard][dkey] = self.dedup.pop(dkey)
        for shard in shards:
            args = InstallShardArgs(
                shard=shard,
                num=config.num,
                data=data[shard],
                dedup=dedup[shard],
                from_gid=self.gid,
                client_id=self.client_id,
                seq=next(self._seq),
            )
            servers = list(config.groups.get(config.shards[shard], []))
            self._shards_to_send[args.shard_info] = ShardTransfer(args, servers)


def _config_to_json(cfg: Config) -> dict[str, Any]:
    return {
        "num": cfg.num,
        "shards": list(cfg.shards),
        "groups": sorted([gid, list(servers)] for gid, servers in cfg.groups.items()),
    }


def _config_from_json(raw: dict[str, Any]) -> Config:
    groups = {int(gid): [str(s) for s in servers] for gid, servers in raw["groups"]}
    return Config(int(raw["num"]), [int(g) for g in raw["shards"]], groups)


def _dedup_to_json(dedup: dict[DedupKey, tuple[int, str]]) -> list[list[Any]]:
    return sorted(
        [k.client_id, k.shard, seq, value] for k, (seq, value) in dedup.items()
    )


def _dedup_from_json(raw: list[list[Any]]) -> dict[DedupKey, tuple[int, str]]:
    return {
        DedupKey(int(cid), int(shard)): (int(seq), str(value))
        for cid, shard, seq, value in raw
    }


def _args_to_json(args: InstallShardArgs) -> dict[str, Any]:
    return {
        "shard": args.shard,
        "num": args.num,
        "data": args.data,
        "dedup": _dedup_to_json(args.dedup),
        "from_gid": args.from_gid,
        "client_id": args.client_id,
        "seq": args.seq,
    }


def _args_from_json(raw: dict[str, Any]) -> InstallShardArgs:
    return InstallShardArgs(
        shard=int(raw["shard"]),
        num=int(raw["num"]),
        data={str(k): str(v) for k, v in raw["data"].items()},
        dedup=_dedup_from_json(raw["dedup"]),
        from_gid=int(raw["from_gid"]),
        client_id=int(raw["client_id"]),
        seq=int(raw["seq"]),
    )