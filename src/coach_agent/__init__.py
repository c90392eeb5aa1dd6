"""Coaching chat backend: routing and internal-tool policy enforcement."""

from .config import ComposerConfig, MatcherConfig, RetrievalConfig, RouterConfig

__all__ = ["ComposerConfig", "MatcherConfig", "RetrievalConfig", "RouterConfig"]
