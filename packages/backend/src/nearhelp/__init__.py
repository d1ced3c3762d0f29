"""NearHelp: realtime core of a neighbourhood help-request marketplace.

Conversations between post owners and interested users, live delivery
over WebSockets, online presence, unread bookkeeping, and push
notifications for users who are not connected.
"""

__version__ = "0.1.0"
