"""audit/ -- Tamper-evident, append-only security event log for ComplianceAuth.

Layer rule: audit/ imports only core/, stdlib and third-party libraries.
auth/ and api/ write to audit/, never the other way around.
"""
