from typing import Optional

from supabase import Client, create_client

from chat_core.core.config import get_settings

_supabase_client: Optional[Client] = None


def get_supabase() -> Client:
    """Get Supabase client instance."""
    global _supabase_client
    if _supabase_client is None:
        settings = get_settings()
        _supabase_client = create_client(
            settings.supabase_url,
            settings.supabase_service_role_key,
        )
    return _supabase_client


def _reset_supabase() -> None:
    """Reset the cached client (for testing)."""
    global _supabase_client
    _supabase_client = None
