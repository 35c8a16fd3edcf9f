# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Hierarchical query cache shared by every view of one application session."""

from .inflight import InflightRequests
from .keys import AgentKeys, EntityKind, MessageKeys, QueryKey, SavedWordKeys, key_for, normalize_words
from .store import CacheEntry, CacheEvent, CacheStore

__all__ = [
    "AgentKeys",
    "CacheEntry",
    "CacheEvent",
    "CacheStore",
    "EntityKind",
    "InflightRequests",
    "MessageKeys",
    "QueryKey",
    "SavedWordKeys",
    "key_for",
    "normalize_words",
]
