"""auth/ -- Authentication and authorization package for TokenWarden.

Layer rule: auth/ imports stdlib, third-party libraries, core/ (settings)
and tokenstore/ (refresh-token record storage).
It does NOT import from api/. api/ and main.py import from auth/, not the
other way around.
"""
