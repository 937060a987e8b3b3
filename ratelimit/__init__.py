"""ratelimit/ -- Per-identifier, per-action attempt limiting with lockout.

Layer rule: ratelimit/ imports only stdlib + third-party libraries, core/ and
the clock helpers in auth/tokens.py. auth/ never imports from here; api/
consults the limiter before calling into AuthService.
"""
