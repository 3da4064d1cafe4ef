"""core/ -- Configuration and the error taxonomy for SupportDesk.

Layer rule: core/ is the kernel. It imports only the standard library and
pydantic. Every other package may import from core/; core/ imports none
of them.
"""
