"""auth/ -- Authentication, account lockout, MFA and signing-key rotation.

Layer rule: auth/ imports from core/ and audit/ plus third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way
around. auth/dependencies.py is the single FastAPI-aware module.
"""
