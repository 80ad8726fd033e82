"""State/store layer.

This package is the single source of truth for how incoming observations
from Meshtastic portnum events and MeshCore adverts are merged into one
canonical per-device record in the key-value store.
"""
