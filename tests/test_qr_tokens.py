"""
Reusable QR tokens: toggles, cascade/restore, redemption and the /qr/{token} redirect.
"""
import pytest

from hikeclub.errors import NotFoundError, ValidationError
from hikeclub.models.access_log import AccessLogStatus
from hikeclub.models.qr_token import QRTokenState
from hikeclub.services import access_log, qr_tokens
from hikeclub.services.qr_tokens import QROutcome

from conftest import LIVE_LINK


def test_create_and_list():
    a = qr_tokens.create("Freshers Fair banner", created_by="chair@hikeclub.org")
    b = qr_tokens.create("Stall table")

    assert len(a.token) == 32
    assert a.state == QRTokenState.ENABLED
    assert a.use_count == 0
    assert {t.id for t in qr_tokens.list_all()} == {a.id, b.id}


def test_create_requires_name():
    with pytest.raises(ValidationError):
        qr_tokens.create("   ")


def test_create_while_globally_disabled_is_parked():
    row = qr_tokens.create("Poster", qr_enabled_globally=False)
    assert row.state == QRTokenState.DISABLED_BY_CASCADE


def test_toggle_and_delete():
    row = qr_tokens.create("Poster")

    assert qr_tokens.set_enabled(row.id, False).state == QRTokenState.DISABLED_MANUALLY
    assert qr_tokens.set_enabled(row.id, True).state == QRTokenState.ENABLED
    assert qr_tokens.set_enabled(row.id, True, qr_enabled_globally=False).state == QRTokenState.DISABLED_BY_CASCADE

    qr_tokens.delete(row.id)
    assert qr_tokens.get(row.id) is None
    with pytest.raises(NotFoundError):
        qr_tokens.delete(row.id)
    with pytest.raises(NotFoundError):
        qr_tokens.set_enabled(row.id, True)


def test_cascade_restores_only_what_it_disabled():
    on = qr_tokens.create("Banner")
    off = qr_tokens.create("Old flyer")
    qr_tokens.set_enabled(off.id, False)

    assert qr_tokens.cascade_disable() == 1
    assert qr_tokens.get(on.id).state == QRTokenState.DISABLED_BY_CASCADE
    assert qr_tokens.get(off.id).state == QRTokenState.DISABLED_MANUALLY

    assert qr_tokens.restore_cascade() == 1
    assert qr_tokens.get(on.id).state == QRTokenState.ENABLED
    assert qr_tokens.get(off.id).state == QRTokenState.DISABLED_MANUALLY


class TestRedeem:
    def test_reusable_and_counted(self, gateway):
        row = qr_tokens.create("Banner")

        for _ in range(3):
            result = qr_tokens.redeem(row.token, gateway, ip="203.0.113.9")
            assert result.ok
            assert result.whatsapp_url == LIVE_LINK

        after = qr_tokens.get(row.id)
        assert after.use_count == 3
        assert after.last_used_at is not None

        logged = [e for e in access_log.recent() if e.qr_token_id == row.id]
        assert len(logged) == 3
        assert all(e.status == AccessLogStatus.SUCCESSFUL_REDIRECT for e in logged)

    def test_unknown_token(self, gateway):
        result = qr_tokens.redeem("deadbeef", gateway)
        assert result.outcome == QROutcome.TOKEN_NOT_FOUND
        assert result.redirect_message == "qr_invalid"
        assert access_log.recent()[0].status == AccessLogStatus.TOKEN_NOT_FOUND

    def test_disabled_token(self, gateway):
        row = qr_tokens.create("Banner")
        qr_tokens.set_enabled(row.id, False)

        result = qr_tokens.redeem(row.token, gateway)
        assert result.outcome == QROutcome.TOKEN_DISABLED
        assert qr_tokens.get(row.id).use_count == 0

    def test_cascade_reports_token_disabled(self, gateway):
        row = qr_tokens.create("Banner")
        qr_tokens.cascade_disable()

        assert qr_tokens.redeem(row.token, gateway).outcome == QROutcome.TOKEN_DISABLED
        # the record survives
        assert qr_tokens.get(row.id) is not None

    def test_global_flag_off(self, gateway, edge_config):
        row = qr_tokens.create("Banner")
        edge_config.items["qr_redirect_enabled"] = False

        result = qr_tokens.redeem(row.token, gateway)
        assert result.outcome == QROutcome.QR_DISABLED_GLOBALLY
        assert result.redirect_message == "qr_disabled"
        assert access_log.recent()[0].status == AccessLogStatus.QR_DISABLED_GLOBALLY

    def test_unusable_link_is_not_counted(self, gateway, monkeypatch):
        row = qr_tokens.create("Banner")
        monkeypatch.setattr(gateway, "is_allowed_link", lambda link: False)

        result = qr_tokens.redeem(row.token, gateway)
        assert result.outcome == QROutcome.LINK_UNAVAILABLE
        assert result.redirect_message == "link_unavailable"

        after = qr_tokens.get(row.id)
        assert after.use_count == 0
        assert after.last_used_at is None
        assert access_log.recent()[0].status == AccessLogStatus.LINK_UNAVAILABLE


class TestRedirectRoute:
    def test_busy_stall_behind_one_address(self, client):
        row = qr_tokens.create("Freshers fair banner")

        for _ in range(15):
            r = client.get(f"/qr/{row.token}", headers={"x-forwarded-for": "130.88.0.1"}, follow_redirects=False)
            assert r.status_code == 307
            assert r.headers["location"] == LIVE_LINK

        assert qr_tokens.get(row.id).use_count == 15
        logged = [e for e in access_log.recent() if e.qr_token_id == row.id]
        assert len(logged) == 15

    def test_success_redirects_to_group(self, client):
        row = qr_tokens.create("Banner")
        r = client.get(f"/qr/{row.token}", follow_redirects=False)

        assert r.status_code == 307
        assert r.headers["location"] == LIVE_LINK
        assert "no-store" in r.headers["cache-control"]

    def test_unknown_redirects_with_reason(self, client):
        r = client.get("/qr/nope", follow_redirects=False)
        assert r.status_code == 307
        assert r.headers["location"] == "/whatsapp?message=qr_invalid"

    def test_disabled_redirects_with_reason(self, client):
        row = qr_tokens.create("Banner")
        qr_tokens.set_enabled(row.id, False)

        r = client.get(f"/qr/{row.token}", follow_redirects=False)
        assert r.headers["location"] == "/whatsapp?message=qr_token_disabled"


def test_qr_code_png(client):
    r = client.get("/api/qr-code", params={"data": "https://hikeclub.test/qr/abc", "size": 200})
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert r.content[:8] == b"\x89PNG\r\n\x1a\n"


def test_qr_code_requires_data(client):
    r = client.get("/api/qr-code")
    assert r.status_code == 400
    assert r.json() == {"success": False, "error": "Data parameter is required"}
