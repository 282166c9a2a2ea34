"""
Gated-resource config gateway: caching, fallback, validation and writes.
"""
import httpx
import pytest

from hikeclub.config import Settings
from hikeclub.errors import ConfigurationError, UpstreamError, ValidationError
from hikeclub.services.gateway import ConfigGateway

from conftest import LIVE_LINK, EdgeConfigStub

FALLBACK = "https://chat.whatsapp.com/FALLBACK"


class Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _gateway(stub: EdgeConfigStub, clock=None, **overrides) -> ConfigGateway:
    s = Settings(**overrides) if overrides else Settings()
    client = httpx.Client(transport=httpx.MockTransport(stub.handler))
    return ConfigGateway(s, client=client, clock=clock or Clock())


def test_reads_live_values():
    gw = _gateway(EdgeConfigStub())
    cfg = gw.get_config()
    assert cfg.whatsapp_link == LIVE_LINK
    assert cfg.qr_redirect_enabled is True
    assert cfg.source == "edge_config"


def test_cache_window():
    stub = EdgeConfigStub()
    clock = Clock()
    gw = _gateway(stub, clock)

    gw.get_config()
    stub.items["whatsapp_link"] = "https://chat.whatsapp.com/NEWGROUP"
    clock.now += 600
    assert gw.get_whatsapp_link() == LIVE_LINK
    assert stub.reads == 1

    clock.now += 601
    assert gw.get_whatsapp_link() == "https://chat.whatsapp.com/NEWGROUP"
    assert stub.reads == 2


def test_fallback_when_store_unavailable():
    stub = EdgeConfigStub()
    stub.fail_reads = True
    gw = _gateway(stub)

    cfg = gw.get_config()
    assert cfg.whatsapp_link == FALLBACK
    assert cfg.qr_redirect_enabled is True
    assert cfg.source == "fallback"


def test_fallback_when_unconfigured():
    stub = EdgeConfigStub()
    gw = _gateway(stub, EDGE_CONFIG_ID="")
    assert gw.get_whatsapp_link() == FALLBACK
    assert stub.reads == 0


def test_disallowed_stored_link_is_ignored():
    stub = EdgeConfigStub({"whatsapp_link": "https://evil.example.com/join", "qr_redirect_enabled": False})
    cfg = _gateway(stub).get_config()
    assert cfg.whatsapp_link == FALLBACK
    assert cfg.qr_redirect_enabled is False


class TestUpdate:
    def test_writes_and_invalidates(self):
        stub = EdgeConfigStub()
        gw = _gateway(stub)
        gw.get_config()

        written = gw.update_config(whatsapp_link=" https://chat.whatsapp.com/NEWGROUP ", qr_redirect_enabled=False)

        assert written == {"whatsapp_link": "https://chat.whatsapp.com/NEWGROUP", "qr_redirect_enabled": False}
        call = stub.writes[0]
        assert call["url"].endswith("/v1/edge-config/ecfg_test/items")
        assert call["auth"] == "Bearer test-vercel-token"
        assert {i["key"] for i in call["body"]["items"]} == {"whatsapp_link", "qr_redirect_enabled"}

        cfg = gw.get_config()
        assert cfg.whatsapp_link == "https://chat.whatsapp.com/NEWGROUP"
        assert cfg.qr_redirect_enabled is False

    def test_team_id_is_passed(self):
        stub = EdgeConfigStub()
        _gateway(stub, VERCEL_TEAM_ID="team_42").update_config(qr_redirect_enabled=True)
        assert "teamId=team_42" in stub.writes[0]["url"]

    def test_rejects_foreign_link(self):
        stub = EdgeConfigStub()
        with pytest.raises(ValidationError):
            _gateway(stub).update_config(whatsapp_link="https://t.me/group")
        assert stub.writes == []

    def test_requires_something(self):
        with pytest.raises(ValidationError):
            _gateway(EdgeConfigStub()).update_config()

    def test_missing_credentials(self):
        stub = EdgeConfigStub()
        with pytest.raises(ConfigurationError) as exc:
            _gateway(stub, VERCEL_API_TOKEN="").update_config(qr_redirect_enabled=False)

        assert exc.value.extra["requirements"]["VERCEL_API_TOKEN"] == "Missing"
        assert exc.value.extra["requirements"]["EDGE_CONFIG_ID"] == "Set"
        assert stub.writes == []

    def test_upstream_failure(self):
        stub = EdgeConfigStub()
        stub.write_status = 500
        with pytest.raises(UpstreamError):
            _gateway(stub).update_config(qr_redirect_enabled=False)
