"""auth/ -- Accounts, one-time codes, sessions, and the authentication state machine.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or events/.
api/ and events/ import from auth/, not the other way around.
"""
