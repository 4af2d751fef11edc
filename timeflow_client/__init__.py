"""
TimeFlow Client Package.

This package contains the offline-first tracking client: a local session
store with a live clock, a durable queue of state changes taken while
offline, and the driver that syncs that queue to the TimeFlow server.
"""
import logging

# Configure a basic null handler for the package logger.
# Applications using this package should configure their own logging.
logging.getLogger(__name__).addHandler(logging.NullHandler())

VERSION = "0.1.0"
