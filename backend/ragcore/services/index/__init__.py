"""Vector and lexical indexes (in-memory and PostgreSQL backed)."""
