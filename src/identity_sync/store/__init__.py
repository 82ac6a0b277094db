"""Per-source identity stores (protocols and in-memory implementations)."""
