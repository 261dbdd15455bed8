"""HTTP boundary of the order service."""
