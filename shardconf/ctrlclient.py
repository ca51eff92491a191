"""Client for the shard controller service."""

from __future__ import annotations

import itertools
import secrets
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any, Protocol

from .common import Config
from .controller import JoinOp, LeaveOp, MoveOp, QueryOp

_SERVICE = "ShardCtrler"
_RETRY_INTERVAL = 0.1


class _Endpoint(Protocol):
    def handle(self, method: str, args: Any) -> Any:
        ...


class CtrlerClerk:
    """Sends requests to the controller replicas until one of them answers.

    Each server is an object with a ``handle(method, args)`` method. A server
    that cannot be reached, or is not the leader, signals it by raising
    ``OSError`` (``ConnectionError``, ``TimeoutError``, ...); the clerk then
    tries the next one and, after a full round, waits and starts over.
    """

    def __init__(
        self,
        servers: Sequence[_Endpoint],
        *,
        retry_interval: float = _RETRY_INTERVAL,
        sleep: Callable[[float], Any] = time.sleep,
        client_id: int | None = None,
    ) -> None:
        self._servers = list(servers)
        self._retry_interval = retry_interval
        self._sleep = sleep
        self.client_id = secrets.randbelow(1 << 62) if client_id is None else client_id
        self._seq = itertools.count(1)
        self._seq_lock = threading.Lock()
        self._dead = threading.Event()

    @property
    def killed(self) -> bool:
        """Whether kill() has been called."""
        return self._dead.is_set()

    def kill(self) -> None:
        """Stop retrying; pending and later calls raise RuntimeError."""
        self._dead.set()

    def _next_seq(self) -> int:
        with self._seq_lock:
            return next(self._seq)

    def _call(self, name: str, args: Any) -> Any:
        method = f"{_SERVICE}.{name}"
        while True:
            if self._dead.is_set():
                raise RuntimeError("controller clerk was killed")
            for server in self._servers:
                try:
                    return server.handle(method, args)
                except OSError:
                    pass
                if self._dead.is_set():
                    raise RuntimeError("controller clerk was killed")
            self._sleep(self._retry_interval)

    def query(self, num: int = -1) -> Config:
        """Fetch configuration ``num``; -1 or an unknown number gives the latest."""
        op = QueryOp(client_id=self.client_id, seq=self._next_seq(), num=num)
        return self._call("Query", op)

    def join(self, servers: Mapping[int, Sequence[str]]) -> None:
        """Add replica groups, mapping each new group id to its servers."""
        op = JoinOp(
            client_id=self.client_id,
            seq=self._next_seq(),
            servers={gid: list(names) for gid, names in servers.items()},
        )
        self._call("Join", op)

    def leave(self, gids: Sequence[int]) -> None:
        """Remove the given replica groups."""
        op = LeaveOp(client_id=self.client_id, seq=self._next_seq(), gids=tuple(gids))
        self._call("Leave", op)

    def move(self, shard: int, gid: int) -> None:
        """Hand ``shard`` to group ``gid``."""
        op = MoveOp(client_id=self.client_id, seq=self._next_seq(), shard=shard, gid=gid)
        self._call("Move", op)