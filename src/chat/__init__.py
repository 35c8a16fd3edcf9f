# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from .agents import AgentDirectory
from .cancellation import GenerationCounter, RequestToken
from .coordinator import SessionMessageCoordinator
from .models import ChatMessage, DeliveryStatus, MessageHistory, SessionPhase
from .naming import derive_draft_name, session_display_name, truncate_name

__all__ = [
    "AgentDirectory",
    "ChatMessage",
    "DeliveryStatus",
    "GenerationCounter",
    "MessageHistory",
    "RequestToken",
    "SessionMessageCoordinator",
    "SessionPhase",
    "derive_draft_name",
    "session_display_name",
    "truncate_name",
]
