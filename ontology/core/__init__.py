"""Database models, schemas, session management and the knowledge store."""
