"""Market estimation engine -- page-one demand, revenue and margin estimates."""

__version__ = "2.0.0"
