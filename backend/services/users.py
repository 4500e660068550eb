# backend/services/users.py
"""Lookups against the user directory and friend lists (read-only)."""
from typing import Optional

from supabase import Client

from errors import NotFound


def get_user(supabase: Client, user_id: str) -> Optional[dict]:
    result = supabase.table("user").select("*").eq("user_id", user_id).execute()
    return result.data[0] if result.data else None


def require_user(supabase: Client, user_id: str, label: str = "User") -> dict:
    user = get_user(supabase, user_id)
    if user is None:
        raise NotFound(f"{label} not found", {"user_id": user_id})
    return user


def resolve_user(supabase: Client, identifier: str) -> dict:
    """Resolve an internal user ID or a unique user name to a user record."""
    user = get_user(supabase, identifier)
    if user is not None:
        return user

    result = supabase.table("user").select("*").eq("user_name", identifier).execute()
    if not result.data:
        raise NotFound(f"User not found: {identifier}", {"identifier": identifier})

    return result.data[0]


def are_friends(supabase: Client, user_id: str, other_user_id: str) -> bool:
    """True when each user is in the other's friend list."""
    for a, b in ((user_id, other_user_id), (other_user_id, user_id)):
        result = supabase.table("user_friend").select("user_id").eq(
            "user_id", a
        ).eq("friend_id", b).execute()
        if not result.data:
            return False

    return True


def display_name(user: Optional[dict]) -> str:
    if not user:
        return "Someone"
    return user.get("user_name") or user["user_id"]
