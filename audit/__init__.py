"""audit/ -- Append-only ledger of authentication events for Storegate.

Layer rule: audit/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or auth/. auth/ writes to the ledger; api/ reads
from it behind the audit:read capability.
"""
