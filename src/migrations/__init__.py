"""Forward-only SQL migrations for the PostgreSQL state backend."""
