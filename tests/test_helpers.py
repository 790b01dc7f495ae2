import pytest

from boxoffice.helpers import hash_password, parse_ts, verify_password

from .conftest import T0


class TestPasswords:
    def test_bcrypt_hash_verifies(self) -> None:
        hashed = hash_password("correct horse", rounds=4)
        assert hashed.startswith("$2b$04$")
        assert verify_password("correct horse", hashed)
        assert not verify_password("battery staple", hashed)

    def test_salted(self) -> None:
        assert hash_password("pw", rounds=4) != hash_password("pw", rounds=4)

    @pytest.mark.parametrize("hashed", [
        "", "not-a-hash", "pbkdf2_sha256$1000$c2FsdA==$aGFzaA==",
    ])
    def test_malformed_hash_never_verifies(self, hashed: str) -> None:
        assert not verify_password("pw", hashed)


@pytest.mark.parametrize("value,expected", [
    (None, None),
    ("", None),
    (T0, T0),
    (int(T0), T0),
    (str(T0), T0),
    ("2026-03-15T00:00:00Z", T0),
    ("2026-03-15T00:00:00", T0),
    ("2026-03-15T01:00:00+01:00", T0),
])
def test_parse_ts(value, expected) -> None:
    assert parse_ts(value) == expected


@pytest.mark.parametrize("value", [
    "next tuesday", "nan", True, [2026], {"at": 1}, float("inf"),
])
def test_parse_ts_rejects(value) -> None:
    with pytest.raises(ValueError):
        parse_ts(value)
