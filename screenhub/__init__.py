"""
Screen Configuration Hub

Distributes named configuration documents with version history, tiered
caching, scheduled backups and health alerting.
"""

__version__ = "1.0.0"
