"""auth/ -- Authentication primitives and external collaborators for CrossAuth.

PKCE/state tokens, the Identity Provider client, the audit sink and the
SQLAlchemy account-security store live here.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, crossdomain/, sessions/, or monitor/.
Those packages import from auth/, not the other way around.
"""
