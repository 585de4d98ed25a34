"""The shard controller's replicated state machine: the history of configurations."""

from __future__ import annotations

from .ctrler_common import NSHARDS, default_config, dprintf


def _shards_by_gid(config):
    gid_to_shards = {gid: [] for gid in config.groups}
    for shard, gid in enumerate(config.shards):
        gid_to_shards.setdefault(gid, []).append(shard)
    return gid_to_shards


def _shard_assignment(gid_to_shards):
    shards = [0] * NSHARDS
    for gid, owned in gid_to_shards.items():
        for shard in owned:
            shards[shard] = gid
    return shards


def gid_with_max_shards(gid_to_shards):
    """Return the gid holding the most shards; gid 0 wins whenever it holds any.

    Ties go to the smallest gid; an empty mapping gives -1.
    """
    if gid_to_shards.get(0):
        return 0
    max_gid, max_count = -1, -1
    for gid in sorted(gid_to_shards):
        if len(gid_to_shards[gid]) > max_count:
            max_gid, max_count = gid, len(gid_to_shards[gid])
    return max_gid


def gid_with_min_shards(gid_to_shards):
    """Return the valid gid holding the fewest shards, smallest gid on ties, or -1."""
    min_gid, min_count = -1, NSHARDS + 1
    for gid in sorted(gid_to_shards):
        if gid != 0 and len(gid_to_shards[gid]) < min_count:
            min_gid, min_count = gid, len(gid_to_shards[gid])
    return min_gid


class CtrlerStateMachine:
    """Keeps every configuration ever produced, numbered from 0."""

    def __init__(self):
        self.configs = [default_config()]

    def _next_config(self):
        config = self.configs[-1].clone()
        config.num = len(self.configs)
        return config

    def query(self, num):
        """Return configuration ``num``, or the latest one if ``num`` is out of range."""
        dprintf("CtrlerStateMachine.query: %s", num)
        if num < 0 or num >= len(self.configs):
            return self.configs[-1].clone()
        return self.configs[num].clone()

    def join(self, groups):
        """Add replica groups and rebalance shards with as few moves as possible."""
        dprintf("CtrlerStateMachine.join: %s", groups)
        config = self._next_config()
        for gid, servers in groups.items():
            if gid not in config.groups:
                config.groups[gid] = list(servers)

        gid_to_shards = _shards_by_gid(config)
        while True:
            max_gid = gid_with_max_shards(gid_to_shards)
            min_gid = gid_with_min_shards(gid_to_shards)
            spread = len(gid_to_shards.get(max_gid, ())) - len(gid_to_shards.get(min_gid, ()))
            if max_gid != 0 and spread <= 1:
                break
            shard = gid_to_shards[max_gid].pop(0)
            gid_to_shards.setdefault(min_gid, []).append(shard)

        config.shards = _shard_assignment(gid_to_shards)
        self.configs.append(config)

    def leave(self, gids):
        """Remove replica groups and hand their shards to the least loaded groups."""
        dprintf("CtrlerStateMachine.leave: %s", gids)
        config = self._next_config()
        gid_to_shards = _shards_by_gid(config)

        unassigned = []
        for gid in gids:
            config.groups.pop(gid, None)
            unassigned.extend(gid_to_shards.pop(gid, ()))

        shards = [0] * NSHARDS
        if config.groups:
            for shard in unassigned:
                gid_to_shards.setdefault(gid_with_min_shards(gid_to_shards), []).append(shard)
            shards = _shard_assignment(gid_to_shards)

        config.shards = shards
        self.configs.append(config)

    def move(self, shard, gid):
        """Assign one shard to a group in a new configuration."""
        if not 0 <= shard < NSHARDS:
            raise IndexError(f"shard {shard} out of range")
        config = self._next_config()
        config.shards[shard] = gid
        self.configs.append(config)