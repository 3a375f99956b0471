"""
Staff identity decoded from a bearer token
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

ADMIN_ROLE = "admin"


class User(BaseModel):
    """A staff member acting on the inbox. Only the claims the pipeline uses are kept."""

    user_id: str = Field(..., description="Token subject; owner id of the accounts this user connects")
    email: Optional[str] = Field(None, description="Contact address from the token, if present")
    role: Optional[str] = Field(None, description="Role claim; 'admin' unlocks the webhook audit views")
    exp: Optional[int] = Field(None, description="Expiry (epoch seconds)")
    app_metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "7f1c9a52-3d0e-4b8a-9f6d-2c5e8b1a4d70",
                "email": "support.lead@example.com",
                "role": "admin",
                "exp": 1767225600,
            }
        }
