"""
Turnstile, Resend mailer and form validation helpers.
"""
import json
from urllib.parse import parse_qs

import httpx
import pytest

from hikeclub.config import Settings
from hikeclub.errors import ConfigurationError, UpstreamError, ValidationError
from hikeclub.models.access_token import AccessMethod
from hikeclub.services import mailer, turnstile
from hikeclub.validation import clean_text, is_university_email, is_valid_phone


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestTurnstile:
    def test_success(self):
        seen = {}

        def handler(request):
            seen.update(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"success": True})

        assert turnstile.verify_turnstile("cf-token", remote_ip="203.0.113.9", client=_client(handler))
        assert seen["secret"] == ["test-turnstile-secret"]
        assert seen["response"] == ["cf-token"]
        assert seen["remoteip"] == ["203.0.113.9"]

    def test_rejected(self):
        handler = lambda request: httpx.Response(200, json={"success": False, "error-codes": ["invalid-input-response"]})
        assert not turnstile.verify_turnstile("cf-token", client=_client(handler))

    def test_provider_down(self):
        handler = lambda request: httpx.Response(503)
        assert not turnstile.verify_turnstile("cf-token", client=_client(handler))

    def test_missing_secret(self):
        with pytest.raises(ConfigurationError):
            turnstile.verify_turnstile("cf-token", settings=Settings(TURNSTILE_SECRET_KEY=""))

    def test_require_human(self):
        handler = lambda request: httpx.Response(200, json={"success": False})
        with pytest.raises(ValidationError, match="Security verification failed"):
            turnstile.require_human("cf-token", client=_client(handler))
        with pytest.raises(ValidationError, match="Bot detected"):
            turnstile.require_human("cf-token", "https://spam.example", client=_client(handler))


class TestMailer:
    def test_send(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "email_123"})

        email = mailer.join_link_email("jo.bloggs@student.manchester.ac.uk", "ab" * 32)
        assert mailer.send(email, client=_client(handler)) == "email_123"

        assert captured["url"] == "https://api.resend.com/emails"
        assert captured["auth"] == "Bearer test-resend-key"
        assert captured["body"]["to"] == ["jo.bloggs@student.manchester.ac.uk"]
        assert "https://hikeclub.test/join#" + "ab" * 32 in captured["body"]["html"]
        assert "24 hours" in captured["body"]["html"]

    def test_join_link_lifetime_follows_method(self):
        s = Settings(EMAIL_LINK_TTL_MINUTES=24 * 60, MANUAL_LINK_TTL_MINUTES=48 * 60)

        approved = mailer.join_link_email("a@b.ac.uk", "ab" * 32, method=AccessMethod.MANUAL, settings=s)
        assert "48 hours" in approved.html
        assert "has been approved" in approved.html

        named = mailer.join_link_email("a@b.ac.uk", "ab" * 32, settings=s, first_name="Jo")
        assert "24 hours" in named.html
        assert "Hi Jo" in named.html
        assert "has been approved" not in named.html

    def test_code_email_mentions_both_lifetimes(self):
        email = mailer.code_email("jo.bloggs@student.manchester.ac.uk", "123456", "abcdef012345")
        assert "/go?code=123456" in email.html
        assert "/v/abcdef012345" in email.html
        assert "30 minutes" in email.html

    def test_provider_rejects(self):
        handler = lambda request: httpx.Response(422, json={"message": "invalid from"})
        with pytest.raises(UpstreamError):
            mailer.send(mailer.join_link_email("a@b.ac.uk", "ab" * 32), client=_client(handler))

    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            mailer.send(mailer.join_link_email("a@b.ac.uk", "ab" * 32), settings=Settings(RESEND_API_KEY=""))


@pytest.mark.parametrize(
    "email,ok",
    [
        ("jo@manchester.ac.uk", True),
        ("jo@student.manchester.ac.uk", True),
        ("jo@ac.uk", True),
        ("jo@gmail.com", False),
        ("jo@fakeac.uk", False),
        ("jo@manchester.ac.uk.evil.com", False),
        ("not-an-email", False),
    ],
)
def test_university_email(email, ok):
    assert is_university_email(email) is ok


@pytest.mark.parametrize(
    "phone,ok",
    [
        ("+447700900123", True),
        ("+44 7700 900123", True),
        ("07700900123", False),
        ("+1 (415) 555-0100", True),
        ("12", False),
        ("", False),
    ],
)
def test_phone(phone, ok):
    assert is_valid_phone(phone) is ok


def test_clean_text():
    assert clean_text("  <script>x</script>Peak District ") == "xPeak District"
