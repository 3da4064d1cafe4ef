"""api/routes/v1/ -- /api/v1 routers: auth endpoints and the live socket.

Layer rule: same as api/. Routers call into auth/ and render core/ errors.
"""
