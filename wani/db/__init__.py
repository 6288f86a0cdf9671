"""SQLite persistence for the local cache."""
