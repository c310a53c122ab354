from __future__ import annotations

from datetime import timedelta

import jwt
import pytest

from parley.realtime import AuthError, AuthErrorKind, CollaboratorTimeout, IdentityVerifier, create_access_token

SECRET = "test-secret"


def _verifier(directory, timeout: float = 0.2) -> IdentityVerifier:
    return IdentityVerifier(directory, secret_key=SECRET, timeout=timeout)


@pytest.mark.anyio("asyncio")
async def test_valid_token_resolves_identity(directory) -> None:
    identity = await _verifier(directory).verify(create_access_token(1, SECRET))

    assert identity.identity_id == 1
    assert identity.display_name == "Alice"


@pytest.mark.anyio("asyncio")
async def test_user_id_claim_is_accepted(directory) -> None:
    token = jwt.encode({"userId": 2}, SECRET, algorithm="HS256")

    identity = await _verifier(directory).verify(token)

    assert identity.identity_id == 2


@pytest.mark.anyio("asyncio")
async def test_expired_token_is_rejected(directory) -> None:
    token = create_access_token(1, SECRET, expires_delta=timedelta(seconds=-5))

    with pytest.raises(AuthError) as excinfo:
        await _verifier(directory).verify(token)

    assert excinfo.value.kind is AuthErrorKind.EXPIRED


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    "token",
    [
        "not-a-jwt",
        create_access_token(1, "another-secret"),
        jwt.encode({"sub": "abc"}, SECRET, algorithm="HS256"),
        jwt.encode({"scope": "chat"}, SECRET, algorithm="HS256"),
    ],
)
async def test_malformed_tokens_are_invalid(directory, token: str) -> None:
    with pytest.raises(AuthError) as excinfo:
        await _verifier(directory).verify(token)

    assert excinfo.value.kind is AuthErrorKind.INVALID


@pytest.mark.anyio("asyncio")
async def test_empty_credential_is_invalid(directory) -> None:
    with pytest.raises(AuthError) as excinfo:
        await _verifier(directory).verify("")

    assert excinfo.value.kind is AuthErrorKind.INVALID
    assert excinfo.value.detail == "Missing token"


@pytest.mark.anyio("asyncio")
async def test_unknown_identity(directory) -> None:
    with pytest.raises(AuthError) as excinfo:
        await _verifier(directory).verify(create_access_token(404, SECRET))

    assert excinfo.value.kind is AuthErrorKind.UNKNOWN_IDENTITY


@pytest.mark.anyio("asyncio")
async def test_slow_directory_times_out(directory) -> None:
    directory.delay = 0.5

    with pytest.raises(CollaboratorTimeout) as excinfo:
        await _verifier(directory, timeout=0.05).verify(create_access_token(1, SECRET))

    assert excinfo.value.operation == "identity lookup"
