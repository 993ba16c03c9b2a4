"""
Shared API
==========

Middleware, exception handlers and request dependencies used by every router.
"""
