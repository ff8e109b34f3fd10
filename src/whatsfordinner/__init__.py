"""Group dinner planning bot: suggestions, polls, cooks and ratings per channel."""

__version__ = "0.1.0"
