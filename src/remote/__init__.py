# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Typed access to the remote chat service."""

from .errors import ChatSyncError, ConflictError, NetworkError, NotFoundError, ValidationError
from .service import HttpRemoteDataService, RemoteDataService

__all__ = [
    "ChatSyncError",
    "ConflictError",
    "HttpRemoteDataService",
    "NetworkError",
    "NotFoundError",
    "RemoteDataService",
    "ValidationError",
]
