"""
Claims feature module.

Computes and caches the per-user claims snapshot that backs every permission
check.
"""
