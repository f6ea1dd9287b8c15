"""
Identity models.
"""
from typing import Optional
from pydantic import BaseModel


class AuthUser(BaseModel):
    """Authenticated identity confirmed by the identity resolver."""
    id: str
    email: Optional[str] = None


class FeatureList(BaseModel):
    """Features enabled for the current identity."""
    features: list[str]
    privileged: bool = False
