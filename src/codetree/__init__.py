"""codetree: structural-consistency engine for multi-parent lineage trees."""

__version__ = "0.1.0"
