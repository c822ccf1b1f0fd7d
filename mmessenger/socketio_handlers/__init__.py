"""
Conversation logic and the Socket.IO surface of the messenger.

``messenger_core`` is the per-profile data layer, ``controller`` turns UI
events into store operations, and ``messenger_events`` binds both to
Socket.IO connections.
"""

__all__ = []
