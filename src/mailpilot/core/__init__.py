"""Cross-cutting building blocks: exception types and structured logging."""
