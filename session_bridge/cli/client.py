"""HTTP client for the session bridge API."""

import json
import os
import urllib.error
import urllib.request
from typing import Optional

DEFAULT_API_URL = "http://127.0.0.1:8430"
API_TIMEOUT = 5  # seconds


class BridgeClient:
    """Client for the session bridge API."""

    def __init__(self, api_url: Optional[str] = None):
        """
        Initialize client.

        Args:
            api_url: Base URL for API (default: $SBRIDGE_API_URL or http://127.0.0.1:8430)
        """
        self.api_url = (api_url or os.environ.get("SBRIDGE_API_URL", DEFAULT_API_URL)).rstrip("/")

    def _request(self, method: str, path: str, data: Optional[dict] = None, timeout: Optional[int] = None) -> tuple[Optional[dict], bool, bool]:
        """
        Make an HTTP request.

        Returns:
            Tuple of (response_data, success, unavailable)
            - success=True, unavailable=False: Request succeeded
            - success=False, unavailable=True: Connection error (bridge not running)
            - success=False, unavailable=False: API error (4xx, 5xx response);
              response_data carries the error body when it is JSON
        """
        url = f"{self.api_url}{path}"
        request_timeout = timeout if timeout is not None else API_TIMEOUT

        try:
            headers = {"Content-Type": "application/json"}
            body = json.dumps(data).encode() if data is not None else None

            req = urllib.request.Request(url, data=body, headers=headers, method=method)
            with urllib.request.urlopen(req, timeout=request_timeout) as response:
                return json.loads(response.read().decode()), True, False

        except urllib.error.HTTPError as e:
            try:
                return json.loads(e.read().decode()), False, False
            except ValueError:
                return None, False, False
        except (urllib.error.URLError, OSError):
            return None, False, True

    def status(self) -> tuple[Optional[dict], bool, bool]:
        return self._request("GET", "/status")

    def list_sessions(self) -> Optional[list]:
        """List all sessions."""
        data, success, _ = self._request("GET", "/sessions")
        if success and data:
            return data.get("sessions", [])
        return None

    def start_recording(self, session_id: str, name: Optional[str] = None) -> tuple[Optional[dict], bool, bool]:
        return self._request("POST", f"/sessions/{session_id}/recording/start", {"name": name})

    def stop_recording(self, session_id: str) -> tuple[Optional[dict], bool, bool]:
        return self._request("POST", f"/sessions/{session_id}/recording/stop")

    def list_recordings(self) -> Optional[list]:
        data, success, _ = self._request("GET", "/recordings")
        if success and data:
            return data.get("recordings", [])
        return None

    def get_recording(self, recording_id: str) -> tuple[Optional[dict], bool, bool]:
        return self._request("GET", f"/recordings/{recording_id}")

    def delete_recording(self, recording_id: str) -> tuple[Optional[dict], bool, bool]:
        return self._request("DELETE", f"/recordings/{recording_id}")

    def open_replay(self, recording_id: str) -> tuple[Optional[dict], bool, bool]:
        return self._request("POST", "/replays", {"recording_id": recording_id})

    def get_replay(self, replay_id: str) -> tuple[Optional[dict], bool, bool]:
        return self._request("GET", f"/replays/{replay_id}")

    def replay_next(self, replay_id: str) -> tuple[Optional[dict], bool, bool]:
        # A step may include the enter delays plus target creation
        return self._request("POST", f"/replays/{replay_id}/next", timeout=30)

    def close_replay(self, replay_id: str) -> tuple[Optional[dict], bool, bool]:
        return self._request("DELETE", f"/replays/{replay_id}")
