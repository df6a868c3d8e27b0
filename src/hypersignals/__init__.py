"""HyperSignals - quantitative signal engine with backtesting and paper trading."""

__version__ = "0.3.0"
