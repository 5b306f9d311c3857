"""
clinic-realtime: live notification layer for a multi-tenant practice application.

- realtime: change-feed subscription multiplexer (raw row deltas -> domain events)
- notify: throttle/dedup stage, desktop escalation, notification outbox
- queue: optimistic waiting-room reorder coordinator
"""

__version__ = "0.3.0"
