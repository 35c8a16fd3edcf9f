"""Word-level translation overlay.

Splits rendered text into segments, attaching a translation to every span
that matches a known word. Works without word separators, so Chinese or
Japanese text is handled the same way as space-delimited scripts.

Matching is greedy: at each position the longest candidate wins and the
choice is never revisited. For overlapping candidates this can produce fewer
matches than an optimal segmentation, e.g. ``"abc"`` with candidates ``ab``
and ``bc`` yields ``ab`` + ``c``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from src.remote.schemas import SavedWordMatch, WordTranslation


@dataclass(frozen=True, slots=True)
class OverlaySegment:
    text: str
    translation: Optional[str] = None
    saved_word: Optional[SavedWordMatch] = None
    sentence_context: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.translation is not None


def tokenize(
    text: str,
    word_translations: Iterable[WordTranslation],
    saved_word_matches: Optional[Mapping[str, SavedWordMatch]] = None,
) -> list[OverlaySegment]:
    """Segment ``text`` against ``word_translations`` by greedy longest match.

    ``saved_word_matches`` is keyed by lower-cased original word. Joining the
    ``text`` of the returned segments always gives back ``text``.
    """
    # sorted() is stable, so equal lengths keep their input order
    candidates = sorted(
        (word for word in word_translations if word.original_word),
        key=lambda word: len(word.original_word),
        reverse=True,
    )
    if not candidates:
        return [OverlaySegment(text=char) for char in text]

    segments: list[OverlaySegment] = []
    i = 0
    length = len(text)
    while i < length:
        for word in candidates:
            original = word.original_word
            if text.startswith(original, i):
                saved = saved_word_matches.get(original.lower()) if saved_word_matches else None
                segments.append(
                    OverlaySegment(
                        text=original,
                        translation=word.translation,
                        saved_word=saved,
                        sentence_context=word.sentence_context,
                    )
                )
                i += len(original)
                break
        else:
            segments.append(OverlaySegment(text=text[i]))
            i += 1
    return segments


def join_segments(segments: Iterable[OverlaySegment]) -> str:
    return "".join(segment.text for segment in segments)


def index_saved_matches(matches: Iterable[SavedWordMatch]) -> dict[str, SavedWordMatch]:
    return {match.original_word.lower(): match for match in matches}
