"""Live camera streaming through a MediaMTX media server.

The widget pipeline never starts streams itself; ``create_camera`` only passes a
stream URL to the client. These helpers back the start/stop/list endpoints.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

from .config import Settings
from .errors import StreamError, StreamNotReadyError

logger = logging.getLogger("dashboard.streaming")

PROTOCOLS = ("hls", "webrtc")


class MediaMtxClient:
    """Minimal client for the MediaMTX control API (v3)."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = f"{base_url.rstrip('/')}/v3"
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.auth = (username, password)

    def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = self._session.request(
                method, f"{self._base_url}{path}", json=json_body, timeout=self._timeout
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise StreamError(f"Media server request {method} {path} failed: {exc}") from exc
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    def add_path_config(self, name: str, config: Dict[str, Any]) -> Any:
        return self._request("POST", f"/config/paths/add/{name}", config)

    def delete_path_config(self, name: str) -> Any:
        return self._request("DELETE", f"/config/paths/delete/{name}")

    def get_active_path(self, name: str) -> Any:
        return self._request("GET", f"/paths/get/{name}")

    def list_active_paths(self) -> Any:
        return self._request("GET", "/paths/list")


class StreamManager:
    """Start/stop/list live streams on top of MediaMtxClient."""

    def __init__(
        self,
        client: MediaMtxClient,
        hls_base: str,
        webrtc_base: str,
        ready_timeout: float = 10.0,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._hls_base = hls_base.rstrip("/")
        self._webrtc_base = webrtc_base.rstrip("/")
        self._ready_timeout = ready_timeout
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "StreamManager":
        client = MediaMtxClient(
            settings.mediamtx_control_base,
            settings.mediamtx_user,
            settings.mediamtx_pass,
        )
        return cls(
            client,
            hls_base=settings.mediamtx_hls_base,
            webrtc_base=settings.mediamtx_webrtc_base,
            ready_timeout=settings.stream_ready_timeout,
            poll_interval=settings.stream_poll_interval,
        )

    def start_stream(self, rtsp_url: str, protocol: str) -> Dict[str, str]:
        """Purpose: Register an RTSP source as a media-server path and wait until it is live.
        Inputs/Outputs: Inputs are the RTSP URL and "hls"|"webrtc"; output is {path, protocol, url}.
        Side Effects / State: Creates a path config; deletes it again when it never becomes ready.
        Dependencies: MediaMtxClient and the injected sleep/clock.
        Failure Modes: Bad arguments raise ValueError; a path not ready within ready_timeout
            raises StreamNotReadyError; transport errors raise StreamError.
        If Removed: The dashboard cannot attach live camera feeds.
        Testing Notes: Fake a client that turns ready on the second poll and check the HLS URL.
        """
        # Validate, register the source, then poll readiness.
        if not rtsp_url:
            raise ValueError("rtspUrl required")
        if protocol not in PROTOCOLS:
            raise ValueError("protocol must be 'hls' or 'webrtc'")
        path = f"stream_{int(time.time() * 1000)}"
        self._client.add_path_config(path, {"source": rtsp_url, "sourceOnDemand": False})
        if not self._wait_until_ready(path):
            self._client.delete_path_config(path)
            raise StreamNotReadyError(f"Stream not ready after {self._ready_timeout:g}s")
        if protocol == "hls":
            url = f"{self._hls_base}/{path}/index.m3u8"
        else:
            url = f"{self._webrtc_base}/{path}/whep"
        logger.info("stream path=%s protocol=%s ready", path, protocol)
        return {"path": path, "protocol": protocol, "url": url}

    def _wait_until_ready(self, path: str) -> bool:
        deadline = self._clock() + self._ready_timeout
        last: Any = None
        while self._clock() < deadline:
            try:
                last = self._client.get_active_path(path)
            except StreamError:
                # Path is not listed until the source connects.
                last = None
            if isinstance(last, dict) and last.get("ready"):
                return True
            self._sleep(self._poll_interval)
        logger.warning("stream path=%s not ready after %ss last=%s", path, self._ready_timeout, last)
        return False

    def stop_stream(self, path: str) -> Dict[str, bool]:
        if not path:
            raise ValueError("path required")
        self._client.delete_path_config(path)
        logger.info("stream path=%s stopped", path)
        return {"success": True}

    def list_active_paths(self) -> Dict[str, Any]:
        data = self._client.list_active_paths()
        return data if isinstance(data, dict) else {"itemCount": 0, "items": []}
