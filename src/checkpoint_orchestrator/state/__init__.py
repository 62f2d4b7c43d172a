"""Checkpoint persistence: codec, key derivation and the secure store."""

__all__: list[str] = []
