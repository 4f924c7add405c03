"""Authentication and sessions.

Learn: Two ways to sign in, one kind of credential:
1. Browser → emailed magic link → session cookie
2. CLI → device code approved in an already signed-in browser → bearer token

Both end in SessionManager.create, and every request is checked by the
AuthGate, which resolves the credential to a "current identity".
"""
