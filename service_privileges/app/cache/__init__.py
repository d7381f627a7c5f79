"""
Cache package for the Privileges Service.

Provides an opt-in Redis cache of resolved privileges, invalidated on
every grant and scope mutation.
"""
