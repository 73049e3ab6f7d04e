"""
Core worker components.
This package owns the broker connection: topic classification, TLS setup,
the reconnecting session, the event channel and the supervisor that runs
the session on its own thread.
"""
