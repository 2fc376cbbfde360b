"""tokenstore/ -- Refresh-token record storage for TokenWarden.

Layer rule: tokenstore/ imports only stdlib, third-party libraries, and the
auth.models / auth.errors data types. It does NOT import from api/ or from
any auth service module. auth/refresh.py drives these stores, not the other
way around.
"""
