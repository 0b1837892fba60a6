"""FastAPI dependencies for auth."""

from batch_analysis.deps.security import require_admin_token, verify_scoped_token

__all__ = ["require_admin_token", "verify_scoped_token"]
