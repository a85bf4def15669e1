"""
Market Snapshot Service

Periodically collects market snapshots from an external data source, stores
them with exact big-integer values in a document store, and serves latest,
historical and grouped views over HTTP.
"""

__version__ = "1.0.0"
