"""auth/ -- Authentication and authorization core for Community Poll Hub.

Credential verification, sessions, the role model, the policy engine, and the
email-change confirmation workflow.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/. api/ imports from auth/, not the other way
around. auth/dependencies.py is the only module that knows about FastAPI.
"""
