"""User directory: record store + username/email index on an object store."""
