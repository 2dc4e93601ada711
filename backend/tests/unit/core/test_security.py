# backend/tests/unit/core/test_security.py
from authguard.core.security import burn_password_hash, get_password_hash, verify_password


def test_hash_and_verify():
    hashed = get_password_hash("correct horse")
    assert hashed != "correct horse"
    assert verify_password("correct horse", hashed)
    assert not verify_password("wrong horse", hashed)


def test_burn_password_hash_returns_nothing():
    assert burn_password_hash("anything") is None
