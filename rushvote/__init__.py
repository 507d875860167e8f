"""rushvote: round lifecycle, aggregation and deliberation for recruitment voting."""

from .version import __version__

__all__ = ["__version__"]
