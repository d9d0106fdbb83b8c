"""
End-to-end tests for the assembled application: request cleaning, host and
client checks, limits, static files, views and PWA assets.
"""
import json

from fastapi import Request
from fastapi.testclient import TestClient

from appserve import render
from appserve.core.middleware import SECURITY_HEADERS

from conftest import CLIENT_HEADERS


def echo(request: Request):
    return {
        "data": request.state.data,
        "query": request.state.query,
        "params": request.state.params,
        "ip": request.state.ip,
        "host": request.state.host,
    }


def test_query_values_are_cleaned(make_server):
    app = make_server().pages({"/echo": echo}).build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        response = client.get("/echo", params={"name": "café☃", "drop": "☃", "x": "a\x00b"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"name": "café", "x": "ab"}
    assert body["ip"] == "203.0.113.7"
    assert body["host"] == "testserver"


def test_json_body_is_cleaned_for_post(make_server):
    app = make_server().pages({"/echo": echo}).build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        response = client.post("/echo", json={"a": "☃", "b": "ok\x07", "list": ["☃", "x"]})
    assert response.status_code == 200
    assert response.json()["data"] == {"b": "ok", "list": [None, "x"]}


def test_form_body_is_cleaned_for_post(make_server):
    app = make_server().pages({"/echo": echo}).build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        response = client.post("/echo", data={"name": "Zoë\x01", "tag": ["a", "b"]})
    assert response.status_code == 200
    assert response.json()["data"] == {"name": "Zoë", "tag": ["a", "b"]}


def test_malformed_json_is_rejected(make_server):
    app = make_server().pages({"/echo": echo}).build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        response = client.post("/echo", content=b"{not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert "Malformed Request Body" in response.text


def test_path_params_are_cleaned(make_server):
    app = make_server().pages({"/items/{item_id}": echo}).build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        response = client.get("/items/caf%C3%A9%E2%98%83")
    assert response.json()["params"] == {"item_id": "café"}


def test_string_results_are_html(make_server):
    app = make_server().pages({"/hi": lambda request: "<p>hi</p>"}).build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        response = client.get("/hi")
    assert response.headers["content-type"].startswith("text/html")
    assert response.text == "<p>hi</p>"


def test_callable_pages_register_routes(make_server):
    def pages(app):
        @app.get("/custom")
        async def custom(request: Request):
            return {"bot": request.state.bot, "localhost": request.state.localhost}

    app = make_server(bot_detector=lambda agent: "pytest" in agent).pages(pages).build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        response = client.get("/custom")
    assert response.json() == {"bot": True, "localhost": False}


def test_security_and_access_headers(make_server):
    app = make_server().pages({"/echo": echo}).build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        response = client.get("/echo")
    for name, value in SECURITY_HEADERS.items():
        assert response.headers[name] == value
    assert response.headers["Access-Control-Allow-Methods"] == "GET,POST"


def test_missing_user_agent_rejected(make_server):
    app = make_server().pages({"/echo": echo}).build()
    with TestClient(app, headers={"X-Forwarded-For": "203.0.113.7", "User-Agent": ""}) as client:
        response = client.get("/echo")
    assert response.status_code == 400
    assert "Invalid or Missing Browser" in response.text


def test_invalid_client_address_rejected(make_server):
    app = make_server().pages({"/echo": echo}).build()
    with TestClient(app, headers={**CLIENT_HEADERS, "X-Forwarded-For": "not-an-ip"}) as client:
        response = client.get("/echo")
    assert response.status_code == 400
    assert "public IP" in response.text


def test_bracketed_ipv6_address_accepted(make_server):
    app = make_server().pages({"/echo": echo}).build()
    with TestClient(app, headers={**CLIENT_HEADERS, "X-Forwarded-For": "[2001:db8::1]"}) as client:
        response = client.get("/echo")
    assert response.json()["ip"] == "2001:db8::1"


def test_bracketed_ipv6_host_accepted(make_server):
    app = make_server().pages({"/echo": echo}).build()
    with TestClient(app, base_url="http://[::1]:3000", headers=CLIENT_HEADERS) as client:
        response = client.get("/echo")
    assert response.status_code == 200
    assert response.json()["host"] == "[::1]"


def test_production_requires_fqdn_host(make_server):
    app = make_server(environment="production").pages({"/echo": echo}).build()
    with TestClient(app, base_url="https://testserver", headers=CLIENT_HEADERS) as client:
        assert client.get("/echo").status_code == 400
    with TestClient(app, base_url="https://example.com", headers=CLIENT_HEADERS) as client:
        response = client.get("/echo")
        assert response.status_code == 200
        assert response.json()["host"] == "example.com"


def test_production_redirects_to_https(make_server):
    app = make_server(environment="production").pages({"/echo": echo}).build()
    with TestClient(app, base_url="http://example.com", headers=CLIENT_HEADERS, follow_redirects=False) as client:
        response = client.get("/echo")
    assert response.status_code in (301, 307, 308)
    assert response.headers["location"].startswith("https://example.com")


def test_rate_limit(make_server):
    app = make_server().rate_limit(max_requests=2).pages({"/echo": echo}).build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        assert client.get("/echo").status_code == 200
        assert client.get("/echo").status_code == 200
        response = client.get("/echo")
    assert response.status_code == 429
    assert response.text == "Too Many Requests!"


def test_body_limit(make_server):
    app = make_server().data_limit("1kb").pages({"/echo": echo}).build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        response = client.post("/echo", json={"blob": "x" * 2048})
    assert response.status_code == 413


def test_unknown_page_is_html_404(make_server):
    app = make_server().build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        response = client.get("/nowhere")
    assert response.status_code == 404
    assert "Page Not Found" in response.text


def test_static_files_served_under_prefix(make_server, tmp_path):
    assets = tmp_path / "assets"
    assets.mkdir()
    (assets / "hello.txt").write_text("hello static")
    app = make_server().static("/cdn", "assets").build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        response = client.get("/cdn/hello.txt")
    assert response.status_code == 200
    assert response.text == "hello static"


def test_startup_creates_static_directory(make_server, tmp_path):
    app = make_server().build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        client.get("/ping")
    assert (tmp_path / "public").is_dir()


def test_views_render_with_layout(make_server, tmp_path):
    views = tmp_path / "templates"
    views.mkdir()
    (views / "index.html").write_text(
        '{% extends "layout.html" %}{% block body %}Hello {{ data.name }} from {{ static }}{% endblock %}'
    )

    server = make_server().static("/cdn", "public").view_engine({"views": "templates", "layout": "layout"})
    app = server.pages({"/page": lambda request: render(request, "index")}).build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        response = client.get("/page", params={"name": "Ann"})
    assert response.status_code == 200
    assert "Hello Ann from /cdn" in response.text
    assert (views / "layout.html").exists()


def test_pwa_manifest_generated(make_server, tmp_path):
    app = make_server().pwa(name="Demo", theme_color="#123456").build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        response = client.get("/manifest.json")
        assert client.get("/service-worker.js").status_code == 200
    assert response.status_code == 200
    manifest = json.loads(response.text)
    assert manifest["name"] == "Demo"
    assert manifest["short_name"] == "App"
    assert manifest["theme_color"] == "#123456"
    assert manifest["icon"] == "favicon.ico"
    assert (tmp_path / "public" / "pwa.js").exists()


def test_minify_pass_runs_on_startup(make_server, tmp_path):
    public = tmp_path / "public"
    public.mkdir()
    (public / "app.js").write_text("var  a = 1;")
    app = make_server().minify("js", js=lambda code: code.replace(" ", "")).build()
    with TestClient(app, headers=CLIENT_HEADERS) as client:
        response = client.get("/app.min.js")
    assert response.text == "vara=1;"
