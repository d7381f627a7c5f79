"""
Privileges Service package for the backlog access-control layer.

This package decides how much a given user may do on an account, a
company within an account, or a backlog within an account. It provides:

- app.main: API surface for resolution, checks, grant administration and health.
- app.privileges: Privilege model, resolver, access gate and grant administrator.
- app.persistence: Grant and scope storage (in-memory and PostgreSQL).
- app.cache: Optional Redis cache of resolved privileges.

Guidelines:
- Resolution is stateless and read-only; every call reads fresh grants.
- The most specific grant wins, except that account admins get FULL.
- Any cache must be invalidated on every grant or scope mutation.
"""
