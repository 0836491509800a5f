"""SQLite persistence for the result cache."""
