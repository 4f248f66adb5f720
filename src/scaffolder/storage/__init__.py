"""SQLite persistence for the task store."""
