"""auth/ -- Passwordless authentication and access-lifecycle package for AccessGate.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
