"""
Market Session - authenticated streaming session against a market-data gateway.

Acquires an OAuth-style bearer token, logs in over a persistent WebSocket,
subscribes to one item and keeps the session alive by renewing the token
before it expires.
"""

__version__ = "1.0.0"
__author__ = "Market Session Team"
