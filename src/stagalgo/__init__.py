"""StagAlgo core: market/portfolio truth store and the decision components built on it."""

__version__ = "0.1.0"
