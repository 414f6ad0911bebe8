"""storyloom - branching interactive-fiction generation engine."""

__version__ = "0.1.0"
