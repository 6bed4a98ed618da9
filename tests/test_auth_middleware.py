from datetime import datetime, timedelta, timezone

import jwt

import auth_middleware
from auth_middleware import (
    create_access_token,
    extract_token,
    generate_api_key,
    hash_secret,
    verify_request_token,
    verify_secret,
)
from auth_models import APIKey


def test_hash_and_verify_secret():
    hashed = hash_secret("correct horse")
    assert verify_secret("correct horse", hashed)
    assert not verify_secret("wrong horse", hashed)
    assert not verify_secret("anything", "not-a-bcrypt-hash")


def test_generate_api_key_shape():
    full_key, prefix, key_hash = generate_api_key()
    assert full_key.startswith("oap_")
    assert prefix == full_key[:12]
    assert verify_secret(full_key, key_hash)


def test_extract_token_prefers_bearer_then_api_key_header():
    assert extract_token({"Authorization": "Bearer abc"}) == "abc"
    assert extract_token({"authorization": "bearer abc"}) == "abc"
    assert extract_token({"X-API-Key": "oap_key"}) == "oap_key"
    assert extract_token({"Authorization": "Basic abc", "x-api-key": "oap_key"}) == "oap_key"
    assert extract_token({"Authorization": "Bearer "}) is None
    assert extract_token({}) is None


def test_verify_request_token_accepts_valid_jwt(db_session, make_user):
    user = make_user()
    headers = {"Authorization": f"Bearer {create_access_token(user.id)}"}

    authed = verify_request_token(db_session, headers)
    assert authed is not None
    assert authed.id == user.id


def test_verify_request_token_rejects_bad_jwts(db_session, make_user):
    user = make_user()

    expired = jwt.encode(
        {"sub": user.id, "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        auth_middleware.JWT_SECRET,
        algorithm="HS256",
    )
    forged = jwt.encode({"sub": user.id}, "some-other-secret-that-is-long-enough", algorithm="HS256")
    unknown = create_access_token("00000000-0000-0000-0000-000000000000")

    for token in (expired, forged, unknown, "garbage"):
        assert verify_request_token(db_session, {"Authorization": f"Bearer {token}"}) is None


def test_verify_request_token_rejects_inactive_user(db_session, make_user):
    user = make_user(is_active=False)
    headers = {"Authorization": f"Bearer {create_access_token(user.id)}"}
    assert verify_request_token(db_session, headers) is None


def test_verify_request_token_handles_api_key_prefix_collision(db_session, make_user):
    user = make_user()
    prefix = "oap_testpref"
    key_a = prefix + "A" * 20
    key_b = prefix + "B" * 20

    db_session.add(APIKey(
        user_id=user.id,
        key_prefix=prefix,
        key_hash=hash_secret(key_a),
        name="Key A",
    ))
    db_session.add(APIKey(
        user_id=user.id,
        key_prefix=prefix,
        key_hash=hash_secret(key_b),
        name="Key B",
    ))
    db_session.commit()

    authed = verify_request_token(db_session, {"Authorization": f"Bearer {key_b}"})
    assert authed is not None
    assert authed.id == user.id

    used = db_session.query(APIKey).filter(APIKey.name == "Key B").one()
    assert used.usage_count == 1
    assert used.last_used is not None

    assert verify_request_token(db_session, {"X-API-Key": key_a}).id == user.id
    assert verify_request_token(db_session, {"Authorization": "Bearer oap_testprefBADKEY"}) is None


def test_verify_request_token_rejects_revoked_and_expired_keys(db_session, make_user):
    user = make_user()
    revoked_key, revoked_prefix, revoked_hash = generate_api_key()
    expired_key, expired_prefix, expired_hash = generate_api_key()

    db_session.add_all([
        APIKey(
            user_id=user.id,
            key_prefix=revoked_prefix,
            key_hash=revoked_hash,
            name="Revoked",
            is_revoked=True,
        ),
        APIKey(
            user_id=user.id,
            key_prefix=expired_prefix,
            key_hash=expired_hash,
            name="Expired",
            expires_at=datetime.utcnow() - timedelta(days=1),
        ),
    ])
    db_session.commit()

    assert verify_request_token(db_session, {"X-API-Key": revoked_key}) is None
    assert verify_request_token(db_session, {"X-API-Key": expired_key}) is None
