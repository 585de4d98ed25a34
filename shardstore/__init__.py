"""Sharded key/value store: a rebalancing shard controller, group replicas and their clients."""

__version__ = "0.1.0"

__all__ = [
    "ctrler_common",
    "ctrler_state",
    "ctrler_client",
    "ctrler_server",
    "kv_common",
    "kv_state",
    "kv_client",
    "kv_server",
]