import pytest

from zoning_mcp import server


def test_missing_feature_url_exits_with_status_1(monkeypatch):
    monkeypatch.delenv("FEATURE_URL", raising=False)
    monkeypatch.setattr(server, "run_http", lambda settings: pytest.fail("server must not start"))
    with pytest.raises(SystemExit) as ei:
        server.main()
    assert ei.value.code == 1


def test_transport_selects_runner(monkeypatch):
    started = []
    monkeypatch.setenv("FEATURE_URL", "https://gis.example.com/arcgis/rest/services/OpenGov/FeatureServer")
    monkeypatch.setenv("MCP_TRANSPORT", "http")
    monkeypatch.setattr(server, "run_http", lambda settings: started.append(settings.transport))
    server.main()
    assert started == ["http"]
