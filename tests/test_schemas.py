import pytest
from pydantic import ValidationError

from edenauth.api.schemas import SigninRequest, SignupRequest, UserResponse
from edenauth.storage.models import User


def _signup(**overrides):
    values = dict(
        email="alice@example.com",
        password="SecurePass123",
        first_name="Alice",
        last_name="Smith",
    )
    values.update(overrides)
    return SignupRequest(**values)


class TestSignupRequest:
    def test_email_is_normalized(self):
        assert _signup(email="  Alice@Example.COM ").email == "alice@example.com"

    def test_zero_width_characters_are_stripped(self):
        assert _signup(email="ali\u200bce@example.com").email == "alice@example.com"

    @pytest.mark.parametrize(
        "password",
        ["Short1A", "alllowercase1", "ALLUPPERCASE1", "NoDigitsHere", "A1a" * 50],
    )
    def test_weak_passwords_are_rejected(self, password):
        with pytest.raises(ValidationError):
            _signup(password=password)

    @pytest.mark.parametrize(
        "email", ["alice", "alice@", "@example.com", "alice@localhost", "a b@example.com"]
    )
    def test_malformed_emails_are_rejected(self, email):
        with pytest.raises(ValidationError):
            _signup(email=email)

    def test_names_are_trimmed_and_bounded(self):
        assert _signup(first_name="  Alice ").first_name == "Alice"
        with pytest.raises(ValidationError):
            _signup(last_name="   ")
        with pytest.raises(ValidationError):
            _signup(last_name="x" * 51)


def test_signin_does_not_check_email_format():
    assert SigninRequest(email="Not-An-Email", password="x").email == "not-an-email"
    with pytest.raises(ValidationError):
        SigninRequest(email="alice@example.com", password="")


def test_user_response_exposes_public_fields_only():
    user = User(
        id="u-1",
        email="alice@example.com",
        first_name="Alice",
        last_name="Smith",
        password_hash="$argon2id$secret",
        failed_login_attempts=3,
    )

    dumped = UserResponse.from_user(user.public()).model_dump()

    assert set(dumped) == {
        "id",
        "email",
        "first_name",
        "last_name",
        "is_email_verified",
        "created_at",
        "last_login_at",
    }
