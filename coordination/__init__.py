"""coordination/ -- Ephemeral TTL key/value store (Redis or in-process).

Layer rule: coordination/ imports only the standard library and redis. It
does NOT import from core/, auth/ or api/.
"""
