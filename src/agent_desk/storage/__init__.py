"""SQLite persistence: ORM tables, engine policy and migrations."""
