"""SQLite storage plumbing shared by the status store and dispatch outbox."""
