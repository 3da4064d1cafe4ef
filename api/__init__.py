"""api/ -- FastAPI application, middleware and HTTP models for SupportDesk.

Layer rule: api/ is the outermost layer. It imports from auth/, coordination/
and core/. Only the ASGI server and tests import from it.
"""
