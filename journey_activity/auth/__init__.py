from journey_activity.auth.tokens import (
    TokenVerification,
    extract_activity_token,
    verify_activity_token,
)

__all__ = [
    "TokenVerification",
    "extract_activity_token",
    "verify_activity_token",
]
