"""SQLite persistence for generation jobs."""
