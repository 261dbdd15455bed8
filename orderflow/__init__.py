"""Order processing with a transactional outbox and idempotent consumers."""

__version__ = "1.0.0"
