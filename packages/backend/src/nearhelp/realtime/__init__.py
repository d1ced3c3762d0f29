"""Real-time infrastructure: presence, rooms, and WebSocket delivery.

Learn: Events flow through two paths:
1. Services → RoomRouter → per-connection outbox → WebSocket
2. Services → Redis PUBLISH → every API process's RoomRouter (when Redis
   is available), so rooms span processes

Nothing here is persisted. Presence and room membership are rebuilt as
clients reconnect after a restart.
"""
