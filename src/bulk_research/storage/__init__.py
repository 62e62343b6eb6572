"""SQLite storage for bulk research jobs."""
