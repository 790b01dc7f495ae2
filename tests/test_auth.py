"""
Login flow on top of the lockout governor.
"""
import pytest

from boxoffice import auth
from boxoffice.auth import AccountLocked, InvalidCredentials, authenticate


@pytest.fixture
def login(db, governor):
    async def _login(username: str, password: str):
        return await authenticate(db.SessionAsync, governor, username,
                                  password, gated=db.gated)
    return _login


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_success(self, login, make_user) -> None:
        user = await make_user("alice", "pw-alice")
        assert (await login("alice", "pw-alice")).id == user.id

    @pytest.mark.asyncio
    async def test_unknown_user(self, login) -> None:
        with pytest.raises(InvalidCredentials) as exc:
            await login("nobody", "whatever")
        assert exc.value.remaining_attempts is None

    @pytest.mark.asyncio
    async def test_unknown_user_still_checks_a_hash(self, login,
                                                    monkeypatch) -> None:
        checked = []

        def recording(password, hashed):
            checked.append(password)
            return real(password, hashed)

        real = auth.verify_password
        monkeypatch.setattr(auth, "verify_password", recording)
        with pytest.raises(InvalidCredentials):
            await login("nobody", "whatever")
        assert checked == ["whatever"]

    @pytest.mark.asyncio
    async def test_wrong_password_reports_remaining(self, login,
                                                    make_user) -> None:
        await make_user("alice", "pw-alice")
        with pytest.raises(InvalidCredentials) as exc:
            await login("alice", "nope")
        assert exc.value.remaining_attempts == 9

    @pytest.mark.asyncio
    async def test_locked_account_refuses_correct_password(
        self, login, make_user, governor, clock
    ) -> None:
        user = await make_user("alice", "pw-alice")
        for _ in range(9):
            with pytest.raises(InvalidCredentials):
                await login("alice", "nope")
        with pytest.raises(AccountLocked) as exc:
            await login("alice", "nope")
        assert exc.value.info.remaining_seconds == 300

        with pytest.raises(AccountLocked):
            await login("alice", "pw-alice")
        # a refused attempt while locked does not count as a failure
        assert (await governor.lockout_info(user.id)).failed_attempts == 10

        clock.advance(301)
        assert (await login("alice", "pw-alice")).id == user.id
        assert (await governor.lockout_info(user.id)).failed_attempts == 0
