"""
Privilege resolution package.

Defines the privilege model and the decision path used by the
Privileges Service: the resolver turns account, company and backlog
grants into one effective privilege, the access gate compares it to
the level an operation needs, and the administrator guards grant
mutations with the same gate.

Modules of interest:
- models: Privilege enum, grants, scopes, decisions and API models.
- engine: Resolution algorithm with admin override and scope precedence.
- gate: Allow/deny decisions with a typed deny reason.
- admin: Guarded grant and scope mutations.
"""
