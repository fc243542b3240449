"""auth/ -- Identity core for Keyhold: accounts, sessions, permission tags,
projects, and the OAuth 2.0 authorization-code provider.

Layer rule: auth/ imports from core/ and third-party libraries only.
It does NOT import from api/ or cache/; caches are injected by api/main.py.
api/ imports from auth/, not the other way around.
"""
