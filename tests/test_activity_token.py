from datetime import datetime, timedelta, timezone

from jose import jwt

from journey_activity.auth.tokens import extract_activity_token, verify_activity_token


SECRET = "jb-secret"


def _token(claims: dict, secret: str = SECRET) -> str:
    return jwt.encode(claims, secret, algorithm="HS256")


def test_verify_returns_claims_for_valid_token():
    result = verify_activity_token(_token({"inArguments": [{"contactKey": "1"}]}), SECRET)
    assert result.valid is True
    assert result.claims["inArguments"][0]["contactKey"] == "1"


def test_verify_is_permissive_when_token_or_secret_missing():
    assert verify_activity_token(None, SECRET).valid is False
    assert verify_activity_token(None, SECRET).reason == "missing_token"
    missing_secret = verify_activity_token(_token({"a": 1}), None)
    assert missing_secret.valid is False
    assert missing_secret.claims is None
    assert missing_secret.reason == "missing_secret"


def test_verify_rejects_wrong_secret_expired_and_garbage_without_raising():
    assert verify_activity_token(_token({"a": 1}, secret="other"), SECRET).valid is False

    expired = _token({"a": 1, "exp": datetime.now(timezone.utc) - timedelta(minutes=5)})
    assert verify_activity_token(expired, SECRET).valid is False

    garbage = verify_activity_token("not-a-jwt", SECRET)
    assert garbage.valid is False
    assert garbage.claims is None
    assert garbage.reason


def test_extract_token_prefers_key_value_then_jwt_then_bare_string():
    assert extract_activity_token({"keyValue": "a", "jwt": "b"}) == "a"
    assert extract_activity_token({"jwt": "  b  "}) == "b"
    assert extract_activity_token("  raw-token \n") == "raw-token"
    assert extract_activity_token({"inArguments": []}) is None
    assert extract_activity_token({"jwt": ""}) is None
    assert extract_activity_token(None) is None
