"""auth/ -- Authentication core for ComplianceAuth.

Credential verification and lockout (protection), token issuance and the
session registry (tokens), TOTP and backup codes (mfa), and the login state
machine that ties them together (orchestrator).

Layer rule: auth/ imports core/, audit/, stdlib and third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
