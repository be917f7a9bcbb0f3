"""
Shared services used by the message processor.

This package contains the thread-safe collaborators injected into the
processor: durable record persistence and in-process metering.
"""

__all__ = ['persistence', 'stats']
