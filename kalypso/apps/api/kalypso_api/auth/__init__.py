"""Authentication via Supabase-issued bearer tokens."""

from kalypso_api.auth.session_auth import AuthContext, get_current_user

__all__ = ["AuthContext", "get_current_user"]
