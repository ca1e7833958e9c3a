"""HTTP client for communicating with the BorgPilot daemon API."""

from __future__ import annotations

import httpx

from borgpilot.config import load_config


class APIClient:
    """Client for the BorgPilot daemon API."""

    def __init__(self, base_url: str | None = None, token: str | None = None):
        """Initialize the API client.

        Args:
            base_url: Base URL for the API (default: from config)
            token: Authentication token (default: from config)
        """
        if base_url is None:
            config = load_config()
            base_url = f"http://{config.daemon.host}:{config.daemon.port}"
            if config.api.auth.enabled and token is None:
                token = config.api.auth.token

        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create the HTTP client."""
        if self._client is None:
            headers = {}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.Client(
                base_url=self.base_url,
                headers=headers,
                timeout=30.0,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "APIClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _get(self, path: str, **kwargs) -> dict:
        response = self._get_client().get(path, **kwargs)
        response.raise_for_status()
        return response.json()

    def _send(self, method: str, path: str, **kwargs) -> dict:
        response = self._get_client().request(method, path, **kwargs)
        response.raise_for_status()
        return response.json()

    def is_daemon_running(self) -> bool:
        """Check if the daemon is running and responding."""
        try:
            response = self._get_client().get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    def health(self) -> dict:
        """Get daemon health status."""
        return self._get("/health")

    def status(self) -> dict:
        """Get runtime status."""
        return self._get("/api/v1/status")

    def list_jobs(self) -> list[dict]:
        """List jobs with runtime status."""
        return self._get("/api/v1/jobs")["jobs"]

    def run_job(self, job_id: str) -> dict:
        """Run a job now."""
        return self._send("POST", f"/api/v1/jobs/{job_id}/run")

    def stop_job(self, job_id: str) -> dict:
        """Stop a running job."""
        return self._send("POST", f"/api/v1/jobs/{job_id}/stop")

    def list_secrets(self) -> list[str]:
        """List secret names."""
        return self._get("/api/v1/secrets")["secrets"]

    def set_secret(self, name: str, value: str) -> dict:
        """Store a secret."""
        return self._send("PUT", f"/api/v1/secrets/{name}", json={"value": value})

    def delete_secret(self, name: str) -> dict:
        """Delete a secret."""
        return self._send("DELETE", f"/api/v1/secrets/{name}")

    def check_wsl(self) -> dict:
        """Run the WSL probe on the daemon host."""
        return self._get("/api/v1/system/wsl", timeout=120.0)

    def check_borg(self) -> dict:
        """Run the borg probe on the daemon host."""
        return self._get("/api/v1/system/borg", timeout=60.0)
