"""SyncFlow: scheduled, chunked syncs from data sources to destinations."""

__version__ = "1.0.0"
