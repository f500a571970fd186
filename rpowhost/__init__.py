"""Host server for reusable proof-of-work tokens with a provable spent-token database."""

__version__ = "0.1.0"
__all__ = ["protocol", "sha1", "dbproof", "validate", "server"]