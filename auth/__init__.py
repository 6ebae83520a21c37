"""auth/ -- Credential and token lifecycle core for credgate.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or notify/.
api/ imports from auth/, not the other way around.
"""
