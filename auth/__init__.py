"""auth/ -- Authentication package for Atrium.

Layer rule: auth/ imports stdlib, third-party libraries and core/.
auth/flows.py is the one module that also imports from mail/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
