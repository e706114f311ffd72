"""
Persistence and token handling for authsync.

This package contains the pluggable key/value storage implementations
and the short-lived session token cache.
"""
