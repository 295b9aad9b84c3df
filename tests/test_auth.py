"""
One-time-code sign-in tests
"""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from httpx import AsyncClient

from app.config import settings
from app.main import app
from app.services.auth_service import (
    OtpSender, generate_otp, get_otp_sender, get_user_by_email, decode_access_token,
)


class CapturingSender(OtpSender):
    def __init__(self):
        self.sent = {}

    async def send(self, email: str, code: str) -> None:
        self.sent[email] = code


@pytest_asyncio.fixture
async def sender(client):
    capturing = CapturingSender()
    app.dependency_overrides[get_otp_sender] = lambda: capturing
    yield capturing


async def request_code(client, sender, email="ada@example.com") -> str:
    response = await client.post("/auth/initiate_signin", json={"email": email})
    assert response.status_code == 200
    assert response.json()["success"] is True
    return sender.sent[email]


def test_generate_otp_shape():
    code = generate_otp(6)
    assert len(code) == 6
    assert code.isdigit()


@pytest.mark.asyncio
async def test_signin_round_trip(client: AsyncClient, sender):
    code = await request_code(client, sender)

    response = await client.post("/auth/signin", json={"email": "ada@example.com", "otp": code})
    assert response.status_code == 200
    token = response.json()["token"]
    assert decode_access_token(token)

    me = await client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    user = me.json()["user"]
    assert user["email"] == "ada@example.com"
    assert user["credits"] == settings.signup_credits
    assert user["isPremium"] is False


@pytest.mark.asyncio
async def test_signup_credits_granted_once(client: AsyncClient, sender, db_session):
    await request_code(client, sender)
    await request_code(client, sender)

    user = await get_user_by_email(db_session, "ada@example.com")
    assert user.credits == settings.signup_credits


@pytest.mark.asyncio
async def test_code_is_single_use(client: AsyncClient, sender):
    code = await request_code(client, sender)
    payload = {"email": "ada@example.com", "otp": code}

    assert (await client.post("/auth/signin", json=payload)).status_code == 200
    response = await client.post("/auth/signin", json=payload)

    assert response.status_code == 401
    assert response.json()["code"] == "unauthorized"


@pytest.mark.asyncio
async def test_wrong_code_and_attempt_limit(client: AsyncClient, sender, monkeypatch):
    monkeypatch.setattr(settings, "otp_max_attempts", 2)
    code = await request_code(client, sender)
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(2):
        response = await client.post("/auth/signin", json={"email": "ada@example.com", "otp": wrong})
        assert response.status_code == 401

    # The right code no longer works once the attempts are used up
    response = await client.post("/auth/signin", json={"email": "ada@example.com", "otp": code})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_expired_code(client: AsyncClient, sender, db_session):
    code = await request_code(client, sender)
    user = await get_user_by_email(db_session, "ada@example.com")
    user.otp_expires_at = datetime.utcnow() - timedelta(minutes=1)
    await db_session.commit()

    response = await client.post("/auth/signin", json={"email": "ada@example.com", "otp": code})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_unknown_email(client: AsyncClient):
    response = await client.post("/auth/signin", json={"email": "nobody@example.com", "otp": "123456"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_invalid_email_is_400(client: AsyncClient):
    response = await client.post("/auth/initiate_signin", json={"email": "not-an-email"})
    assert response.status_code == 400
