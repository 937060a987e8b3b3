"""auth/ -- Identity, session and one-time-token core for authcore.

Layer rule: auth/ imports only stdlib + third-party libraries and core/.
It does NOT import from api/ or ratelimit/. Rate limits are consulted by the
calling layer (api/) before it invokes AuthService, never from inside auth/.
"""
