"""
TimeFlow API service.

Server side of TimeFlow: owns the authoritative session timeline and
reconciles events that clients queued while offline.
"""

VERSION = "1.0.0"
