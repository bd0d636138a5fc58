"""Persistent state layer.

Holds the seen-id set and the pending-message queue that back the delivery
queue. Only :class:`lora_endpoint.delivery.DeliveryQueue` mutates them.
"""

from lora_endpoint.state.store import MessageStore, SqliteMessageStore

__all__ = [
    "MessageStore",
    "SqliteMessageStore",
]
