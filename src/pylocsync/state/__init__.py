"""State layer.

Holds the last-known position of every remote peer. Only the sync
channel writes here; everything else reads snapshots.
"""
