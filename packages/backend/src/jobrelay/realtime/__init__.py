"""Real-time delivery — live client sessions and the registry that indexes them.

Learn: Completion events come from the broker on worker tasks; clients are
connected on their own websocket tasks. The ConnectionRegistry is the
bridge: workers look up a subject's live sessions there, and the gateway
registers / deregisters sessions as connections come and go.

Clients that are offline when their event arrives get it from the
OfflineBuffer on reconnect (best effort, bounded by a TTL).
"""
