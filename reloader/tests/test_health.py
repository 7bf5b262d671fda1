from __future__ import annotations

import threading
import urllib.error
import urllib.request

from reloader.src.health import start_health_server
from reloader.src.metrics import METRICS


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServer:
    """Tests for the health server's readiness and metrics endpoints."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.server = start_health_server(ready=self.ready, port=0)
        self.port = self.server.server_address[1]
        self.base_url = f"http://127.0.0.1:{self.port}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_returns_503_before_watches_start(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "watches=not-ready"

    def test_readyz_returns_200_when_watches_ready(self) -> None:
        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "watches=ready"

    def test_readyz_returns_503_after_watch_lost(self) -> None:
        self.ready.set()
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 200

        self.ready.clear()
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 503

    def test_metrics_exports_reloader_series(self) -> None:
        METRICS.active_watches.set(2)
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "config_reload_active_watches 2.0" in body

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
        assert status == 404


class TestHealthServerWatchNames:
    """Readiness body lists the watches that are currently open."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.names = ["secret-watch", "configmap-watch"]
        self.server = start_health_server(
            ready=self.ready, port=0, watch_names=lambda: list(self.names)
        )
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_readyz_lists_open_watches(self) -> None:
        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "watches=ready configmap-watch,secret-watch"

    def test_readyz_shows_remaining_watches_after_one_is_lost(self) -> None:
        self.names = ["configmap-watch"]
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "watches=not-ready configmap-watch"
