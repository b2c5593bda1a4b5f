"""auth/ -- Authentication and access-control gateway for Storegate.

Components, leaf-first:
  store.py        account directory (persisted per-admin record)
  lockout.py      authoritative lockout decisions
  ratelimit.py    advisory client-local attempt limiter
  identity.py     identity provider contract + local bcrypt/JWT provider
  oauth.py        authlib registry for federated providers
  sessions.py     session issue, proactive refresh, revocation
  permissions.py  role -> capability sets
  gateway.py      server-side login orchestration and audit trail
  client.py       the client surface (login/logout/current_session/is_authorized)

Layer rule: auth/ imports only stdlib, third-party libraries, core/ and audit/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
