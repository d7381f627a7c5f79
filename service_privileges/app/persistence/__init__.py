"""
Persistence package for the Privileges Service.

Provides the storage protocols the resolver depends on and two
backends: an in-memory store for local runs and tests, and a
PostgreSQL store that enforces grant uniqueness and cascading removal
in the schema.
"""
