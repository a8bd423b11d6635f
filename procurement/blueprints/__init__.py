"""
Procurement Workflow Engine
Blueprint registry.
"""

from flask import request


def parse_limit(default_limit=50, max_limit=500):
    """Read the ``limit`` query param, falling back to the default on junk.

    Query params:
        limit — max items (default ``default_limit``, capped at ``max_limit``)
    """
    try:
        limit = int(request.args.get("limit", default_limit))
    except (ValueError, TypeError):
        return default_limit
    if limit < 1:
        return default_limit
    return min(limit, max_limit)
