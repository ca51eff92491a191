"""One replica of a sharded key/value group: request handling and migration daemons."""

from __future__ import annotations

import concurrent.futures
import secrets
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Optional, Union

from .common import Config, StaleRequestError
from .ctrlclient import CtrlerClerk
from .shardstate import (
    APPEND,
    GET,
    PUT,
    ClientOp,
    DedupKey,
    InstallShardArgs,
    Result,
    ShardStore,
    ShardTransfer,
)

_SERVICE = "ShardKV"
_Payload = Union[ClientOp, InstallShardArgs, Config, None]
_RequestId = Optional[tuple[int, int]]


@dataclass(eq=False)
class _Command:
    """A log entry; the waiter only lives in memory on the server that started it."""

    payload: _Payload
    origin: Optional[int] = None
    waiter: Optional[concurrent.futures.Future] = None

    @property
    def request_id(self) -> _RequestId:
        if isinstance(self.payload, (ClientOp, InstallShardArgs)):
            return (self.payload.client_id, self.payload.seq)
        return None


class ShardKV:
    """A replica of group ``gid`` serving Get, PutAppend and InstallShard.

    Commands are handed to a replicated log through ``start(command)``, which
    returns ``(index, is_leader)``; the log feeds committed commands back
    through ``deliver``. Without a ``start`` the server keeps a local log that
    commits every command at once. Unless ``background`` is false, two
    threads run: one polls the controller for new configurations, the other
    sends shards that left this group to their new owners.

    Requests fail by raising ``OSError`` subclasses: ``ConnectionError`` when
    this replica is not (or no longer) the leader or was killed, and
    ``TimeoutError`` when a command is not committed in time.
    """

    def __init__(
        self,
        gid: int,
        ctrlers: Sequence[Any],
        make_end: Callable[[str], Any],
        *,
        me: int = 0,
        start: Optional[Callable[[_Command], tuple[int, bool]]] = None,
        is_leader: Optional[Callable[[], bool]] = None,
        maxraftstate: int = -1,
        log_size: Optional[Callable[[], int]] = None,
        on_snapshot: Optional[Callable[[int, bytes], Any]] = None,
        snapshot: Optional[bytes] = None,
        timeout: float = 2.0,
        poll_interval: float = 0.1,
        background: bool = True,
    ) -> None:
        self.gid = gid
        self.me = me
        self._make_end = make_end
        self._mck = CtrlerClerk(ctrlers, retry_interval=poll_interval)
        self._start = start if start is not None else self._local_start
        self._is_leader = is_leader if is_leader is not None else (lambda: True)
        self._maxraftstate = maxraftstate
        self._log_size = log_size
        self._on_snapshot = on_snapshot
        self._timeout = timeout
        self._poll = poll_interval

        self._apply_lock = threading.RLock()
        self._mu = threading.Lock()
        self._pending: dict[int, tuple[_RequestId, concurrent.futures.Future]] = {}
        self._send_cond = threading.Condition()
        self._dead = threading.Event()

        self.client_id = secrets.randbelow(1 << 62)
        self.store = ShardStore(gid, self._mck.query(0), client_id=self.client_id)
        if snapshot:
            self.store = ShardStore.restore(snapshot)

        self._threads: list[threading.Thread] = []
        if background:
            for target in (self._send_loop, self._fetch_loop):
                thread = threading.Thread(target=target, daemon=True)
                thread.start()
                self._threads.append(thread)

    # ----------------------------------------------------------------- requests

    def handle(self, method: str, args: Any) -> Any:
        """Serve a request by name ("Get", "ShardKV.PutAppend", "InstallShard").

        Get and PutAppend take a ClientOp and return a Result, which is not
        valid when this group does not serve the key's shard right now.
        InstallShard takes InstallShardArgs and returns whether the shard
        was accepted.
        """
        service, _, name = method.rpartition(".")
        if service not in ("", _SERVICE):
            raise ValueError(f"unknown method {method!r}")
        if name in ("Get", "PutAppend"):
            if not isinstance(args, ClientOp):
                raise TypeError(f"{method} expects ClientOp, got {type(args).__name__}")
            allowed = (GET,) if name == "Get" else (PUT, APPEND)
            if args.op not in allowed:
                raise ValueError(f"{method} cannot carry a {args.op} operation")
            return self._client_request(args)
        if name == "InstallShard":
            if not isinstance(args, InstallShardArgs):
                raise TypeError(
                    f"{method} expects InstallShardArgs, got {type(args).__name__}"
                )
            return self._install_shard(args)
        raise ValueError(f"unknown method {method!r}")

    def _client_request(self, op: ClientOp) -> Result:
        if self._dead.is_set():
            raise ConnectionError("server was killed")
        if not self._is_leader():
            raise ConnectionError("not the leader")
        entry = self.store.dedup.get(DedupKey(op.client_id, op.shard))
        if entry is not None:
            seq, value = entry
            if op.seq == seq:
                return Result(True, value if op.op == GET else "")
            if op.seq < seq:
                raise StaleRequestError(op.client_id, op.seq, seq)
        return self._replicate(op)

    def _install_shard(self, args: InstallShardArgs) -> bool:
        # data for a configuration this group already left behind is safe to drop
        if args.num < self.store.config.num:
            return True
        try:
            self._replicate(args)
        except ConnectionError:
            return False
        return True

    def _replicate(self, payload: _Payload) -> Any:
        if self._dead.is_set():
            raise ConnectionError("server was killed")
        waiter: concurrent.futures.Future = concurrent.futures.Future()
        command = _Command(payload, self.me, waiter)
        index, leader = self._start(command)
        if not leader:
            raise ConnectionError("not the leader")
        with self._mu:
            self._pending[index] = (command.request_id, waiter)
        try:
            return waiter.result(timeout=self._timeout)
        except concurrent.futures.TimeoutError as exc:
            raise TimeoutError(f"command at index {index} was not committed") from exc
        finally:
            with self._mu:
                recorded = self._pending.get(index)
                if recorded is not None and recorded[1] is waiter:
                    del self._pending[index]

    def _local_start(self, command: _Command) -> tuple[int, bool]:
        with self._apply_lock:
            index = self.store.last_applied + 1
            self.deliver(index, command)
        return index, True

    # ------------------------------------------------------------------ applying

    def deliver(self, index: int, op: Any) -> None:
        """Apply a committed log entry at ``index``.

        ``op`` is a command given to ``start``, a bare ClientOp, Config or
        InstallShardArgs, None for a no-op, or bytes holding a snapshot. Index
        -1 marks a local no-op that never advances the applied index.
        """
        with self._apply_lock:
            if isinstance(op, (bytes, bytearray)):
                if index <= self.store.last_applied:
                    raise RuntimeError(
                        f"snapshot index {index} <= last applied {self.store.last_applied}"
                    )
                self.store = ShardStore.restore(bytes(op))
                self.store.last_applied = index
                self._wake_sender()
                return

            command = op if isinstance(op, _Command) else _Command(op)
            self._fail_conflicting(index, command)
            if index != -1 and index <= self.store.last_applied:
                raise RuntimeError(
                    f"command index {index} <= last applied {self.store.last_applied}"
                )

            payload = command.payload
            result: Optional[Result] = None
            if payload is None:
                pass
            elif isinstance(payload, Config):
                if self.store.apply_config_change(payload):
                    self._wake_sender()
            elif isinstance(payload, InstallShardArgs):
                self.store.apply_install_shard(payload)
                result = Result(True)
            elif isinstance(payload, ClientOp):
                result = self.store.apply_client_op(payload)
            else:
                raise TypeError(f"cannot apply {type(payload).__name__}")

            if result is not None and command.origin == self.me and command.waiter is not None:
                self._settle(command.waiter, result=result)
            if index != -1:
                self.store.last_applied = index
            self._maybe_snapshot(index if index != -1 else self.store.last_applied)

    def _maybe_snapshot(self, index: int) -> None:
        if self._maxraftstate <= 0 or self._log_size is None or self._on_snapshot is None:
            return
        if self._log_size() >= self._maxraftstate:
            self._on_snapshot(index, self.store.snapshot())

    def _settle(
        self,
        waiter: concurrent.futures.Future,
        *,
        result: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        with self._mu:
            if waiter.done():
                return
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(result)

    def _fail_conflicting(self, index: int, command: _Command) -> None:
        with self._mu:
            recorded = self._pending.pop(index, None)
        if recorded is not None and recorded[0] != command.request_id:
            self._settle(recorded[1], error=ConnectionError("lost leadership"))

    def _fail_all(self, reason: str) -> None:
        with self._mu:
            pending = list(self._pending.values())
            self._pending.clear()
        for _, waiter in pending:
            self._settle(waiter, error=ConnectionError(reason))

    def lose_leadership(self) -> None:
        """Fail every request waiting for a commit; the log's term changed."""
        self._fail_all("lost leadership")

    def kill(self) -> None:
        """Stop the daemons and fail all waiting requests."""
        self._dead.set()
        self._wake_sender()
        self._mck.kill()
        self._fail_all("server was killed")
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(timeout=2.0)

    # ------------------------------------------------------------------- daemons

    def _wake_sender(self) -> None:
        with self._send_cond:
            self._send_cond.notify_all()

    def _fetch_loop(self) -> None:
        while not self._dead.is_set():
            try:
                latest = self._mck.query(-1)
                for num in range(self.store.config.num + 1, latest.num + 1):
                    if self._dead.is_set():
                        return
                    config = self._mck.query(num)
                    if self._dead.is_set():
                        return
                    self._start(_Command(config, self.me))
            except RuntimeError:
                if self._dead.is_set():
                    return
                raise
            self._dead.wait(self._poll)

    def _send_loop(self) -> None:
        while not self._dead.is_set():
            with self._send_cond:
                while not self.store.outgoing() and not self._dead.is_set():
                    self._send_cond.wait(self._poll)
            if self._dead.is_set():
                return
            failed = False
            for transfer in self.store.outgoing():
                if not self._send(transfer):
                    failed = True
            if failed:
                self._dead.wait(self._poll)

    def _send(self, transfer: ShardTransfer) -> bool:
        for server in transfer.servers:
            if self._dead.is_set():
                return False
            try:
                accepted = self._make_end(server).handle(
                    f"{_SERVICE}.InstallShard", transfer.args
                )
            except OSError:
                continue
            if accepted:
                if self.store.acknowledge_sent(transfer.args.shard_info):
                    # everything handed over: give the snapshot a chance to shrink
                    self.deliver(-1, None)
                return True
        return False