"""Types shared by the shard controller and the sharded key/value store."""

from __future__ import annotations

from dataclasses import dataclass, field

NSHARDS = 10
"""Number of shards the key space is split into."""


def key2shard(key: str) -> int:
    """Return the shard holding ``key``: its first byte modulo NSHARDS."""
    data = key.encode("utf-8")
    return data[0] % NSHARDS if data else 0


def _no_shards() -> list[int]:
    return [0] * NSHARDS


@dataclass
class Config:
    """A numbered assignment of shards to replica groups.

    ``shards[i]`` is the group id serving shard ``i`` (0 means unassigned)
    and ``groups`` maps each group id to its list of server names.
    """

    num: int = 0
    shards: list[int] = field(default_factory=_no_shards)
    groups: dict[int, list[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.shards = list(self.shards)
        if len(self.shards) != NSHARDS:
            raise ValueError(
                f"a configuration holds {NSHARDS} shards, got {len(self.shards)}"
            )
        self.groups = {gid: list(servers) for gid, servers in self.groups.items()}

    def copy(self) -> Config:
        """Return an independent deep copy."""
        return Config(self.num, list(self.shards), self.groups)

    @classmethod
    def initial(cls) -> Config:
        """Configuration #0: no groups, every shard on the invalid group 0."""
        return cls()


@dataclass(frozen=True)
class ShardInfo:
    """Identifies one shard's data as of a configuration number."""

    shard: int
    num: int


class StaleRequestError(Exception):
    """A client request older than one already executed for that client."""

    def __init__(self, client_id: int, seq: int, latest_seq: int) -> None:
        super().__init__(
            f"request {seq} from client {client_id} is older than "
            f"already executed request {latest_seq}"
        )
        self.client_id = client_id
        self.seq = seq
        self.latest_seq = latest_seq