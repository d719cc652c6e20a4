# jobs/base.py
"""
Workspace context for scheduled jobs.

A job runs outside any request, so nothing sets the RLS session variables
for it. Each job names the workspace (and optionally the acting user) it
works on before touching owned tables.
"""

from functools import wraps

from services.tenant_service import set_workspace_context


def with_workspace_context(workspace_id: int, user_id: int = None):
    """
    Run the decorated job with the RLS context of one workspace.

    Usage:
        @with_workspace_context(workspace_id)
        def recount_contacts():
            return Contact.query.count()  # Only this workspace's rows
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            set_workspace_context(workspace_id, user_id)
            return func(*args, **kwargs)
        return wrapper
    return decorator


def set_job_workspace_context(workspace_id: int, user_id: int = None):
    """Same as the decorator, for loops that switch workspace per item."""
    set_workspace_context(workspace_id, user_id)
