"""
Async HTTP client for the Command Board API.

Every call returns an ApiResult; business rejections and transport failures
are values, never exceptions, so the monitor can branch on `code`.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

logger = logging.getLogger(__name__)

# Codes for failures that never reached the command service
UNAVAILABLE = "unavailable"

_STATUS_CODES = {
    400: "invalid-argument",
    401: "unauthenticated",
    403: "permission-denied",
    404: "not-found",
    409: "already-exists",
}


@dataclass(frozen=True)
class ApiResult:
    success: bool
    data: Any = None
    code: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiResult":
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and "success" in body:
            if body["success"]:
                return cls(True, data=body.get("data"))
            return cls(False, code=body.get("code"), message=body.get("message"))

        if response.is_success:
            return cls(True, data=body)
        # Auth dependencies answer {"detail": ...}
        detail = body.get("detail") if isinstance(body, dict) else None
        return cls(
            False,
            code=_STATUS_CODES.get(response.status_code, "internal"),
            message=detail or f"HTTP {response.status_code}",
        )


class CommandBoardClient:
    """
    Thin wrapper over /api/auth and /api/command.

    Holds the access and refresh tokens; refresh_credentials() swaps in a new
    access token without touching the device session.
    """

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.refresh_token = refresh_token
        self._http = http or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def aclose(self):
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def _headers(self) -> dict:
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _call(self, method: str, path: str, json: Optional[dict] = None) -> ApiResult:
        try:
            response = await self._http.request(method, path, json=json, headers=self._headers())
        except httpx.RequestError as e:
            logger.warning(f"{method} {path} failed: {e}")
            return ApiResult(False, code=UNAVAILABLE, message=f"Cannot reach server: {e}")
        return ApiResult.from_response(response)

    # =========================================================================
    # Credentials
    # =========================================================================

    async def login(self, email: str, password: str) -> ApiResult:
        result = await self._call("POST", "/api/auth/login", {"email": email, "password": password})
        if result.success:
            self.access_token = result.data["access_token"]
            self.refresh_token = result.data["refresh_token"]
        return result

    async def refresh_credentials(self) -> ApiResult:
        if not self.refresh_token:
            return ApiResult(False, code="unauthenticated", message="No refresh token. Please log in again.")
        result = await self._call("POST", "/api/auth/refresh", {"refresh_token": self.refresh_token})
        if result.success:
            self.access_token = result.data["access_token"]
        return result

    async def logout(self) -> ApiResult:
        if not self.refresh_token:
            return ApiResult(True)
        result = await self._call("POST", "/api/auth/logout", {"refresh_token": self.refresh_token})
        self.access_token = None
        self.refresh_token = None
        return result

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(self) -> ApiResult:
        return await self._call("POST", "/api/command/sessions")

    async def heartbeat(self, session_id: str) -> ApiResult:
        return await self._call("POST", f"/api/command/sessions/{session_id}/heartbeat")

    async def end_session(self, session_id: str) -> ApiResult:
        return await self._call("DELETE", f"/api/command/sessions/{session_id}")

    async def check_session_status(self, session_id: str) -> ApiResult:
        return await self._call("GET", f"/api/command/sessions/{session_id}/status")

    # =========================================================================
    # Incidents and command
    # =========================================================================

    async def get_active_incidents(self) -> ApiResult:
        return await self._call("GET", "/api/command/incidents")

    async def get_closed_incidents(self) -> ApiResult:
        return await self._call("GET", "/api/command/incidents/closed")

    async def get_incident(self, incident_id: str) -> ApiResult:
        return await self._call("GET", f"/api/command/incidents/{incident_id}")

    async def start_incident(
        self,
        session_id: str,
        incident_number: Optional[str] = None,
        incident_name: Optional[str] = None,
    ) -> ApiResult:
        return await self._call("POST", "/api/command/incidents", {
            "session_id": session_id,
            "incident_number": incident_number,
            "incident_name": incident_name,
        })

    async def close_incident(self, incident_id: str) -> ApiResult:
        return await self._call("POST", f"/api/command/incidents/{incident_id}/close")

    async def take_command(self, incident_id: str, session_id: str) -> ApiResult:
        return await self._call("POST", f"/api/command/incidents/{incident_id}/command", {"session_id": session_id})

    async def reestablish_command(self, incident_id: str, session_id: str) -> ApiResult:
        return await self._call(
            "POST", f"/api/command/incidents/{incident_id}/command/reestablish", {"session_id": session_id}
        )

    # =========================================================================
    # Handoff
    # =========================================================================

    async def request_command(self, incident_id: str, session_id: str) -> ApiResult:
        return await self._call(
            "POST", f"/api/command/incidents/{incident_id}/command-requests", {"session_id": session_id}
        )

    async def approve_command_request(self, request_id: str) -> ApiResult:
        return await self._call("POST", f"/api/command/command-requests/{request_id}/approve")

    async def deny_command_request(self, request_id: str) -> ApiResult:
        return await self._call("POST", f"/api/command/command-requests/{request_id}/deny")

    async def cancel_command_request(self, request_id: str) -> ApiResult:
        return await self._call("POST", f"/api/command/command-requests/{request_id}/cancel")

    # =========================================================================
    # Change feed
    # =========================================================================

    def websocket_url(self, incident_id: Optional[str] = None) -> str:
        """URL for /ws/command, carrying the current access token."""
        if self.base_url.startswith("https://"):
            ws_base = "wss://" + self.base_url[len("https://"):]
        elif self.base_url.startswith("http://"):
            ws_base = "ws://" + self.base_url[len("http://"):]
        else:
            ws_base = self.base_url
        params = {"token": self.access_token or ""}
        if incident_id:
            params["incident_id"] = incident_id
        return f"{ws_base}/ws/command?{urlencode(params)}"
