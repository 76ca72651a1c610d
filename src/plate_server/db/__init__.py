"""SQLite persistence layer: connection scope, schema and one repository per table."""
