import threading

import pytest

from shardconf.common import NSHARDS, Config
from shardconf.controller import ShardController
from shardconf.ctrlclient import CtrlerClerk


class _End:
    def __init__(self, ctrl):
        self.ctrl = ctrl
        self.up = True
        self.calls = 0

    def handle(self, method, args):
        self.calls += 1
        if not self.up:
            raise ConnectionError("server unreachable")
        return self.ctrl.handle(method, args)


def _no_sleep(_seconds):
    return None


@pytest.fixture
def ctrl():
    return ShardController()


@pytest.fixture
def ends(ctrl):
    return [_End(ctrl) for _ in range(3)]


def _clerk(ends):
    return CtrlerClerk(ends, sleep=_no_sleep)


def _check(groups, ck):
    c = ck.query(-1)
    assert len(c.groups) == len(groups)
    for g in groups:
        assert g in c.groups
    if groups:
        for shard, g in enumerate(c.shards):
            assert g in c.groups, f"shard {shard} -> invalid group {g}"
    counts = {}
    for g in c.shards:
        counts[g] = counts.get(g, 0) + 1
    if c.groups:
        per_group = [counts.get(g, 0) for g in c.groups]
        assert max(per_group) <= min(per_group) + 1


def test_basic_leave_join(ends):
    ck = _clerk(ends)
    cfa = [ck.query(-1)]
    _check([], ck)

    ck.join({1: ["x", "y", "z"]})
    _check([1], ck)
    cfa.append(ck.query(-1))

    ck.join({2: ["a", "b", "c"]})
    _check([1, 2], ck)
    cfa.append(ck.query(-1))

    cfx = ck.query(-1)
    assert cfx.groups[1] == ["x", "y", "z"]
    assert cfx.groups[2] == ["a", "b", "c"]

    ck.leave([1])
    _check([2], ck)
    cfa.append(ck.query(-1))

    ck.leave([2])
    cfa.append(ck.query(-1))
    assert cfa[-1].groups == {}

    # historical queries, with each server down in turn
    for end in ends:
        end.up = False
        for cf in cfa:
            assert ck.query(cf.num) == cf
        end.up = True


def test_initial_query_is_config_zero(ends):
    ck = _clerk(ends)
    assert ck.query(-1) == Config(0, [0] * NSHARDS, {})


def test_move_increases_num_and_sticks(ends):
    ck = _clerk(ends)
    ck.join({1: ["1a"]})
    ck.join({2: ["2a"]})
    ck.join({3: ["3a"]})
    before = ck.query(-1)
    assert before.shards == [3, 2, 2, 2, 2, 3, 3, 1, 1, 1]
    ck.move(1, 1)
    after = ck.query(-1)
    assert after.num == before.num + 1
    assert after.shards == [3, 1, 2, 2, 2, 3, 3, 1, 1, 1]
    _check([1, 2, 3], ck)


def test_concurrent_leave_join(ends, ctrl):
    ck = _clerk(ends)
    npara = 10
    clerks = [_clerk([_End(ctrl) for _ in range(3)]) for _ in range(npara)]
    gids = [i * 10 + 100 for i in range(npara)]

    def work(i):
        gid = gids[i]
        clerks[i].join({gid + 1000: [f"s{gid}a"]})
        clerks[i].join({gid: [f"s{gid}b"]})
        clerks[i].leave([gid + 1000])

    threads = [threading.Thread(target=work, args=(i,)) for i in range(npara)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    _check(gids, ck)

    c1 = ck.query(-1)
    for i in range(5):
        gid = npara + 1 + i
        ck.join({gid: [f"{gid}a", f"{gid}b", f"{gid}b"]})
    c2 = ck.query(-1)
    for gid in c1.groups:
        for shard in range(NSHARDS):
            if c2.shards[shard] == gid:
                assert c1.shards[shard] == gid, "non-minimal transfer after joins"

    for i in range(5):
        ck.leave([npara + 1 + i])
    c3 = ck.query(-1)
    for gid in c1.groups:
        for shard in range(NSHARDS):
            if c2.shards[shard] == gid:
                assert c3.shards[shard] == gid, "non-minimal transfer after leaves"


def test_multi_group_join_leave(ends, ctrl):
    ck = _clerk(ends)
    _check([], ck)
    ck.join({1: ["x", "y", "z"], 2: ["a", "b", "c"]})
    _check([1, 2], ck)
    ck.join({3: ["j", "k", "l"]})
    _check([1, 2, 3], ck)

    cfx = ck.query(-1)
    assert cfx.groups[1] == ["x", "y", "z"]
    assert cfx.groups[2] == ["a", "b", "c"]
    assert cfx.groups[3] == ["j", "k", "l"]

    ck.leave([1, 3])
    _check([2], ck)
    assert ck.query(-1).groups[2] == ["a", "b", "c"]
    ck.leave([2])

    npara = 10
    clerks = [_clerk([_End(ctrl)]) for _ in range(npara)]
    gids = [i + 1000 for i in range(npara)]

    def work(i):
        gid = gids[i]
        clerks[i].join(
            {
                gid: [f"{gid}a", f"{gid}b", f"{gid}c"],
                gid + 1000: [f"{gid + 1000}a"],
                gid + 2000: [f"{gid + 2000}a"],
            }
        )
        clerks[i].leave([gid + 1000, gid + 2000])

    threads = [threading.Thread(target=work, args=(i,)) for i in range(npara)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    _check(gids, ck)

    c1 = ck.query(-1)
    ck.join({npara + 1 + i: [f"{npara + 1 + i}a", f"{npara + 1 + i}b"] for i in range(5)})
    c2 = ck.query(-1)
    for gid in c1.groups:
        for shard in range(NSHARDS):
            if c2.shards[shard] == gid:
                assert c1.shards[shard] == gid
    ck.leave([npara + 1 + i for i in range(5)])
    c3 = ck.query(-1)
    for gid in c1.groups:
        for shard in range(NSHARDS):
            if c2.shards[shard] == gid:
                assert c3.shards[shard] == gid

    # same config seen after a server goes away
    c = ck.query(-1)
    ends[0].up = False
    assert ck.query(-1) == c


def test_skips_unreachable_server(ctrl):
    down, up = _End(ctrl), _End(ctrl)
    down.up = False
    sleeps = []
    ck = CtrlerClerk([down, up], sleep=sleeps.append)
    ck.join({5: ["s"]})
    assert ck.query(-1).groups == {5: ["s"]}
    assert sleeps == []
    assert down.calls == 2


def test_retries_after_full_round(ctrl):
    end = _End(ctrl)
    end.up = False
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        end.up = True

    ck = CtrlerClerk([end], sleep=sleep, retry_interval=0.25)
    cfg = ck.query(-1)
    assert cfg.num == 0
    assert sleeps == [0.25]
    assert end.calls == 2


def test_killed_clerk_stops_retrying(ctrl):
    end = _End(ctrl)
    end.up = False
    ck = CtrlerClerk([end], sleep=_no_sleep)
    ck.kill()
    assert ck.killed
    with pytest.raises(RuntimeError):
        ck.query(-1)
    with pytest.raises(RuntimeError):
        ck.join({1: ["a"]})
    assert ctrl.latest().num == 0


def test_kill_during_retries(ctrl):
    end = _End(ctrl)
    end.up = False
    holder = {}

    def sleep(_seconds):
        holder["ck"].kill()

    ck = CtrlerClerk([end], sleep=sleep)
    holder["ck"] = ck
    with pytest.raises(RuntimeError):
        ck.leave([1])
    assert end.calls == 1


def test_sequence_numbers_increase(ctrl):
    seen = []

    class _Recorder:
        def handle(self, method, args):
            seen.append((method, args.client_id, args.seq))
            return ctrl.handle(method, args)

    ck = CtrlerClerk([_Recorder()], sleep=_no_sleep, client_id=42)
    ck.join({1: ["a"]})
    ck.move(0, 1)
    latest = ck.query(-1)
    assert latest.num == 2
    assert latest.shards == [1] * NSHARDS
    assert latest.groups == {1: ["a"]}
    assert seen == [
        ("ShardCtrler.Join", 42, 1),
        ("ShardCtrler.Move", 42, 2),
        ("ShardCtrler.Query", 42, 3),
    ]