"""
Core Hub: platform-level routes.

Routes:
- /me/features: Feature flags for the current user
"""
from typing import List, Optional
from fastapi import APIRouter, Header

from core.auth import require_auth_user, get_admin_policy, is_privileged
from core.database import DATASTORE_ERRORS, get_supabase_admin, first_row
from core.models import FeatureList

router = APIRouter()

DEFAULT_FEATURES = ("billing",)
ALL_FEATURES = ("billing", "dashboard", "tasks", "ai_summary", "admin")


def normalize_features(raw) -> List[str]:
    """Defaults first, then stored flags; unknown and duplicate flags are dropped."""
    stored = raw if isinstance(raw, list) else []
    features: List[str] = []
    for flag in [*DEFAULT_FEATURES, *stored]:
        if isinstance(flag, str) and flag in ALL_FEATURES and flag not in features:
            features.append(flag)
    return features


# ─────────────────────────────────────────────────────────────────────────────
# USER ENDPOINTS
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/me/features")
def get_my_features(authorization: Optional[str] = Header(None)) -> FeatureList:
    """Features enabled for the caller. Privileged operators get every feature."""
    user = require_auth_user(authorization)
    db = get_supabase_admin()

    stored = None
    try:
        result = db.table("profile_settings").select("features").eq("user_id", user.id).limit(1).execute()
        row = first_row(result)
        stored = row.get("features") if row else None
    except DATASTORE_ERRORS as e:
        # Falls back to the default feature set
        print(f"[me/features] failed to load profile settings user={user.id} error={e}")

    features = normalize_features(stored)
    if is_privileged(user, get_admin_policy()):
        return FeatureList(features=normalize_features([*features, *ALL_FEATURES]), privileged=True)
    return FeatureList(features=features)
