# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""On-demand message translations, saved vocabulary and the word overlay."""

from .cache import Granularity, TranslationCache, TranslationStatus
from .saved_words import SavedWordRepository
from .tokenizer import OverlaySegment, index_saved_matches, join_segments, tokenize

__all__ = [
    "Granularity",
    "OverlaySegment",
    "SavedWordRepository",
    "TranslationCache",
    "TranslationStatus",
    "index_saved_matches",
    "join_segments",
    "tokenize",
]
