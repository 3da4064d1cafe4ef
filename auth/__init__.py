"""auth/ -- Identity, session and credential-vault package for SupportDesk.

Layer rule: auth/ imports from core/ and coordination/ plus third-party
libraries. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
