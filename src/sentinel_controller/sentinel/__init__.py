"""Sentinel connections and the registry they publish into."""

from .connection import (
    SWITCH_MASTER_CHANNEL,
    SentinelConnection,
    parse_master_reply,
    parse_switch_master,
    redis_client_factory,
)
from .registry import SentinelRegistry

__all__ = [
    "SWITCH_MASTER_CHANNEL",
    "SentinelConnection",
    "SentinelRegistry",
    "parse_master_reply",
    "parse_switch_master",
    "redis_client_factory",
]
