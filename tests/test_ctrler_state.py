from collections import Counter

import pytest

from shardstore.ctrler_common import NSHARDS, Config
from shardstore.ctrler_state import (
    CtrlerStateMachine,
    gid_with_max_shards,
    gid_with_min_shards,
)


def check(sm, groups):
    c = sm.query(-1)
    assert len(c.groups) == len(groups)
    for g in groups:
        assert g in c.groups
    if groups:
        for g in c.shards:
            assert g in c.groups
    counts = Counter(c.shards)
    if c.groups:
        low = min(counts[g] for g in c.groups)
        high = max(counts[g] for g in c.groups)
        assert high <= low + 1


@pytest.fixture
def sm():
    return CtrlerStateMachine()


def test_basic_leave_join_and_historical_queries(sm):
    cfa = [Config() for _ in range(6)]
    cfa[0] = sm.query(-1)
    check(sm, [])

    sm.join({1: ["x", "y", "z"]})
    check(sm, [1])
    cfa[1] = sm.query(-1)

    sm.join({2: ["a", "b", "c"]})
    check(sm, [1, 2])
    cfa[2] = sm.query(-1)

    cfx = sm.query(-1)
    assert cfx.groups[1] == ["x", "y", "z"]
    assert cfx.groups[2] == ["a", "b", "c"]

    sm.leave([1])
    check(sm, [2])
    cfa[4] = sm.query(-1)

    sm.leave([2])
    cfa[5] = sm.query(-1)

    for cf in cfa:
        assert sm.query(cf.num) == cf


def test_move(sm):
    gid3, gid4 = 503, 504
    sm.join({gid3: ["3a", "3b", "3c"]})
    sm.join({gid4: ["4a", "4b", "4c"]})
    for i in range(NSHARDS):
        cf = sm.query(-1)
        target = gid3 if i < NSHARDS // 2 else gid4
        sm.move(i, target)
        if cf.shards[i] != target:
            assert sm.query(-1).num > cf.num
    cf2 = sm.query(-1)
    for i in range(NSHARDS):
        assert cf2.shards[i] == (gid3 if i < NSHARDS // 2 else gid4)
    sm.leave([gid3])
    sm.leave([gid4])
    check(sm, [])


def test_move_out_of_range_raises(sm):
    sm.join({1: ["x"]})
    with pytest.raises(IndexError):
        sm.move(NSHARDS, 1)
    with pytest.raises(IndexError):
        sm.move(-1, 1)


def test_sequential_leave_join_then_minimal_transfers(sm):
    npara = 10
    gids = [xi * 10 + 100 for xi in range(npara)]
    for gid in gids:
        sm.join({gid + 1000: [f"s{gid}a"]})
        sm.join({gid: [f"s{gid}b"]})
        sm.leave([gid + 1000])
    check(sm, gids)

    c1 = sm.query(-1)
    for i in range(5):
        gid = npara + 1 + i
        sm.join({gid: [f"{gid}a", f"{gid}b", f"{gid}b"]})
    c2 = sm.query(-1)
    for i in range(1, npara + 1):
        for j in range(NSHARDS):
            if c2.shards[j] == i:
                assert c1.shards[j] == i

    for i in range(5):
        sm.leave([npara + 1 + i])
    c3 = sm.query(-1)
    for i in range(1, npara + 1):
        for j in range(NSHARDS):
            if c2.shards[j] == i:
                assert c3.shards[j] == i


def test_minimal_again(sm):
    sm.join({1: ["x", "y", "z"]})
    sm.join({2: ["a", "b", "c"]})
    c1 = sm.query(-1)
    sm.join({3: ["d", "e", "f"]})
    c2 = sm.query(-1)

    for i in range(NSHARDS):
        if c2.shards[i] != 3:
            assert c1.shards[i] == c2.shards[i]
    changed = sum(1 for i in range(NSHARDS) if c1.shards[i] != c2.shards[i])
    assert changed <= NSHARDS // 3 + 1

    sm.leave([1])
    c3 = sm.query(-1)
    for i in range(NSHARDS):
        if c2.shards[i] != 1:
            assert c2.shards[i] == c3.shards[i]
    changed = sum(1 for i in range(NSHARDS) if c2.shards[i] != c3.shards[i])
    assert changed <= NSHARDS // 3 + 1


def test_multi_leave_join(sm):
    check(sm, [])
    sm.join({1: ["x", "y", "z"], 2: ["a", "b", "c"]})
    check(sm, [1, 2])
    sm.join({3: ["j", "k", "l"]})
    check(sm, [1, 2, 3])

    cfx = sm.query(-1)
    assert cfx.groups[1] == ["x", "y", "z"]
    assert cfx.groups[2] == ["a", "b", "c"]
    assert cfx.groups[3] == ["j", "k", "l"]

    sm.leave([1, 3])
    check(sm, [2])
    assert sm.query(-1).groups[2] == ["a", "b", "c"]

    sm.leave([2])
    check(sm, [])


def test_multi_concurrent_style_and_minimal_transfers(sm):
    npara = 10
    gids = [xi + 1000 for xi in range(npara)]
    for gid in gids:
        sm.join({
            gid: [f"{gid}a", f"{gid}b", f"{gid}c"],
            gid + 1000: [f"{gid + 1000}a"],
            gid + 2000: [f"{gid + 2000}a"],
        })
        sm.leave([gid + 1000, gid + 2000])
    check(sm, gids)

    c1 = sm.query(-1)
    sm.join({npara + 1 + i: [f"{npara + 1 + i}a", f"{npara + 1 + i}b"] for i in range(5)})
    c2 = sm.query(-1)
    for i in range(1, npara + 1):
        for j in range(NSHARDS):
            if c2.shards[j] == i:
                assert c1.shards[j] == i

    sm.leave([npara + 1 + i for i in range(5)])
    c3 = sm.query(-1)
    for i in range(1, npara + 1):
        for j in range(NSHARDS):
            if c2.shards[j] == i:
                assert c3.shards[j] == i


def test_join_does_not_replace_existing_group(sm):
    sm.join({1: ["x"]})
    sm.join({1: ["other"]})
    assert sm.query(-1).groups[1] == ["x"]


def test_query_out_of_range_returns_latest(sm):
    sm.join({1: ["x"]})
    latest = sm.query(-1)
    assert sm.query(99) == latest
    assert sm.query(0).groups == {}


def test_query_returns_copy(sm):
    sm.join({1: ["x"]})
    got = sm.query(1)
    got.shards[0] = 42
    got.groups[1].append("y")
    again = sm.query(1)
    assert again.shards[0] == 1
    assert again.groups[1] == ["x"]


def test_gid_with_max_prefers_gid_zero_when_it_has_shards():
    assert gid_with_max_shards({0: [4], 5: [1, 2, 3]}) == 0


def test_gid_with_max_breaks_ties_on_smallest_gid():
    assert gid_with_max_shards({0: [], 3: [1, 2], 4: [5, 6]}) == 3


def test_gid_with_min_skips_gid_zero():
    assert gid_with_min_shards({0: [], 2: [1], 7: []}) == 7
    assert gid_with_min_shards({}) == -1