"""Engine configuration.

The cache and coordinator classes take these objects as arguments and never
read the environment; only :func:`load_settings` does.
"""

import math
from dataclasses import dataclass, field

from .loader import get_bool_env, get_float_env, get_str_env

DEFAULT_API_BASE_URL = "http://localhost:3001/api"


@dataclass
class CacheSettings:
    """Stale times in seconds per entity family."""

    agents_stale_time: float = 300.0
    sessions_stale_time: float = 30.0
    history_stale_time: float = 30.0
    saved_words_stale_time: float = 60.0
    translations_stale_time: float = math.inf


@dataclass
class EngineSettings:
    api_base_url: str = DEFAULT_API_BASE_URL
    # Create sessions on the server as soon as "new session" is clicked instead
    # of on the first message.
    eager_session_creation: bool = False
    cache: CacheSettings = field(default_factory=CacheSettings)


def load_settings() -> EngineSettings:
    defaults = CacheSettings()
    cache = CacheSettings(
        agents_stale_time=get_float_env("CHAT_AGENTS_STALE_SECONDS", defaults.agents_stale_time),
        sessions_stale_time=get_float_env("CHAT_SESSIONS_STALE_SECONDS", defaults.sessions_stale_time),
        history_stale_time=get_float_env("CHAT_HISTORY_STALE_SECONDS", defaults.history_stale_time),
        saved_words_stale_time=get_float_env(
            "CHAT_SAVED_WORDS_STALE_SECONDS", defaults.saved_words_stale_time
        ),
    )
    return EngineSettings(
        api_base_url=get_str_env("CHAT_API_BASE_URL", DEFAULT_API_BASE_URL),
        eager_session_creation=get_bool_env("CHAT_EAGER_SESSIONS", False),
        cache=cache,
    )
