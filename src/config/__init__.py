# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from .loader import get_bool_env, get_float_env, get_int_env, get_str_env
from .settings import CacheSettings, EngineSettings, load_settings

__all__ = [
    "CacheSettings",
    "EngineSettings",
    "get_bool_env",
    "get_float_env",
    "get_int_env",
    "get_str_env",
    "load_settings",
]
