"""
Authentication helpers for the page admin API.

Design goals:
- Stateless: the session is a signed cookie, nothing is stored server-side.
- Naver login via the OAuth authorization-code flow with a CSRF `state` cookie.
- Provisioning is deferred to the status/redeem endpoints so login never touches the store.
"""
