"""audit/ -- Append-only security audit log.

Layer rule: audit/ imports only stdlib, third-party libraries and core/.
auth/ and api/ write to the audit log; the audit log never calls back into them.
"""
