"""In-memory key/value store for a single shard."""

from __future__ import annotations

from dataclasses import dataclass, field

from .kv_common import Err, ShardStatus


@dataclass
class MemoryKVStateMachine:
    """The key/value pairs of one shard together with its migration status."""

    kv: dict[str, str] = field(default_factory=dict)
    status: ShardStatus = ShardStatus.NORMAL

    def clone(self):
        """Return an independent copy of the data and status."""
        return MemoryKVStateMachine(kv=dict(self.kv), status=self.status)

    def copy_data(self):
        """Return a copy of the key/value pairs."""
        return dict(self.kv)

    def get(self, key):
        """Return ``(value, Err.OK)``, or ``("", Err.NO_KEY)`` when the key is absent."""
        if key in self.kv:
            return self.kv[key], Err.OK
        return "", Err.NO_KEY

    def put(self, key, value):
        """Set ``key`` to ``value``."""
        self.kv[key] = value
        return Err.OK

    def append(self, key, value):
        """Append ``value`` to the value of ``key``, treating a missing key as empty."""
        self.kv[key] = self.kv.get(key, "") + value
        return Err.OK