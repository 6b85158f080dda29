"""SQLite persistence: connection, schema, search index, records, maintenance."""
