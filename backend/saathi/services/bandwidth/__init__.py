"""Low-bandwidth payload shaping."""

from .adapter import adapt, strip_formatting, truncate_at_word

__all__ = ["adapt", "strip_formatting", "truncate_at_word"]
