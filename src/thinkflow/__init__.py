"""thinkflow: grow an idea into a mind map with streamed ai expansion."""

__version__ = "0.1.0"
