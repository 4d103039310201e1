"""Background workers: receipt outbox publisher and pending payment sweep."""
