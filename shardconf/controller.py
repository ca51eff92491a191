"""The shard controller: keeps the history of shard-to-group configurations."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Union

from .common import NSHARDS, Config, StaleRequestError


@dataclass(frozen=True)
class _Request:
    client_id: int
    seq: int


@dataclass(frozen=True)
class JoinOp(_Request):
    """Add replica groups: group id -> server names."""

    servers: Mapping[int, Sequence[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class LeaveOp(_Request):
    """Remove replica groups by id."""

    gids: Sequence[int] = ()


@dataclass(frozen=True)
class MoveOp(_Request):
    """Hand one shard to a given group."""

    shard: int = 0
    gid: int = 0


@dataclass(frozen=True)
class QueryOp(_Request):
    """Fetch configuration ``num``, or the latest when out of range."""

    num: int = -1


Operation = Union[JoinOp, LeaveOp, MoveOp, QueryOp]

_METHODS: dict[str, type] = {
    "Join": JoinOp,
    "Leave": LeaveOp,
    "Move": MoveOp,
    "Query": QueryOp,
}
_SERVICE = "ShardCtrler"


def rebalance(config: Config) -> None:
    """Spread shards evenly over the config's groups, moving as few as possible.

    Works in place. Unassigned shards and shards above a group's fair share
    are handed out to groups in ascending id order.
    """
    if not config.groups:
        return
    expected, remainder = divmod(NSHARDS, len(config.groups))
    gids = sorted(config.groups)
    counts = dict.fromkeys(gids, 0)
    for gid in config.shards:
        if gid > 0:
            counts[gid] = counts.get(gid, 0) + 1

    # groups allowed to hold one shard more than `expected`
    roomy: set[int] = set()
    pending: deque[int] = deque()
    for shard, gid in enumerate(config.shards):
        if gid <= 0:
            pending.append(shard)
            config.shards[shard] = 0
        elif counts[gid] > expected:
            if counts[gid] == expected + 1 and (len(roomy) < remainder or gid in roomy):
                roomy.add(gid)
                continue
            pending.append(shard)
            counts[gid] -= 1
            config.shards[shard] = 0

    while pending:
        progressed = False
        for gid in gids:
            if not pending:
                break
            one_more = counts[gid] == expected and len(roomy) < remainder
            if counts[gid] < expected or one_more:
                if one_more:
                    roomy.add(gid)
                config.shards[pending.popleft()] = gid
                counts[gid] += 1
                progressed = True
        if not progressed:
            raise RuntimeError(f"shards {list(pending)} cannot be allocated")


def _copied(value: Config | None) -> Config | None:
    return value.copy() if value is not None else None


class ShardController:
    """State machine holding every configuration, with per-client deduplication."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._configs: list[Config] = [Config.initial()]
        self._dedup: dict[int, tuple[int, Config | None]] = {}

    def latest(self) -> Config:
        """Return a copy of the newest configuration."""
        with self._lock:
            return self._configs[-1].copy()

    def apply(self, op: Operation) -> Config | None:
        """Execute a committed operation; a repeat of the last one returns its result."""
        with self._lock:
            return self._apply(op)

    def handle(self, method: str, args: Operation) -> Config | None:
        """Serve a request by name ("Join", "ShardCtrler.Query", ...).

        Returns the configuration for queries and None otherwise. Raises
        StaleRequestError for a request older than the client's last one.
        """
        service, _, name = method.rpartition(".")
        if service not in ("", _SERVICE) or name not in _METHODS:
            raise ValueError(f"unknown method {method!r}")
        expected_type = _METHODS[name]
        if not isinstance(args, expected_type):
            raise TypeError(
                f"{method} expects {expected_type.__name__}, got {type(args).__name__}"
            )
        with self._lock:
            entry = self._dedup.get(args.client_id)
            if entry is not None:
                seq, value = entry
                if args.seq == seq:
                    return _copied(value)
                if args.seq < seq:
                    raise StaleRequestError(args.client_id, args.seq, seq)
            return self._apply(args)

    def _apply(self, op: Operation) -> Config | None:
        entry = self._dedup.get(op.client_id)
        if entry is not None and entry[0] == op.seq:
            return _copied(entry[1])
        result: Config | None = None
        if isinstance(op, JoinOp):
            self._join(op)
        elif isinstance(op, LeaveOp):
            self._leave(op)
        elif isinstance(op, MoveOp):
            self._move(op)
        elif isinstance(op, QueryOp):
            result = self._query(op)
        else:
            raise TypeError(f"invalid operation {op!r}")
        self._dedup[op.client_id] = (op.seq, result)
        return _copied(result)

    def _next_config(self) -> Config:
        cfg = self._configs[-1].copy()
        cfg.num += 1
        return cfg

    def _join(self, op: JoinOp) -> None:
        cfg = self._next_config()
        for gid, servers in op.servers.items():
            servers = list(servers)
            current = cfg.groups.get(gid)
            if current is not None:
                if sorted(current) != sorted(servers):
                    raise ValueError(
                        f"group {gid} already has servers {sorted(current)}, "
                        f"not {sorted(servers)}"
                    )
                servers = sorted(servers)
            cfg.groups[gid] = servers
        rebalance(cfg)
        self._configs.append(cfg)

    def _leave(self, op: LeaveOp) -> None:
        cfg = self._next_config()
        for gid in op.gids:
            cfg.groups.pop(gid, None)
        valid = next((gid for gid in cfg.shards if gid in cfg.groups), 0)
        cfg.shards = [gid if gid in cfg.groups else valid for gid in cfg.shards]
        rebalance(cfg)
        self._configs.append(cfg)

    def _move(self, op: MoveOp) -> None:
        if not 0 <= op.shard < NSHARDS:
            raise ValueError(f"shard {op.shard} out of range")
        cfg = self._next_config()
        cfg.shards[op.shard] = op.gid
        rebalance(cfg)
        self._configs.append(cfg)

    def _query(self, op: QueryOp) -> Config:
        num = op.num
        if num < 0 or num >= len(self._configs):
            num = len(self._configs) - 1
        return self._configs[num].copy()