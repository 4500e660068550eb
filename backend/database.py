# backend/database.py
from functools import lru_cache

from supabase import Client, create_client

from settings import get_settings


@lru_cache()
def get_supabase() -> Client:
    """
    Supabase client dependency.

    Created on first use so the app can be imported without credentials;
    tests override this dependency with their own client.
    """
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_KEY must be set")

    return create_client(settings.supabase_url, settings.supabase_key)
