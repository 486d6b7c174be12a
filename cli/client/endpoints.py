"""API Endpoint Wrappers"""

from typing import Any

from ..utils.config_manager import config
from .base import APIClient, PortalAPIError

__all__ = ["PortalClient", "PortalAPIError"]


class PortalClient:
    """High-level client for the portal's admin and status endpoints"""

    def __init__(self, base_url: str | None = None, admin_token: str | None = None):
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get("base_url", "http://localhost:3001")
        token = admin_token or api_config.get("admin_token")

        self.api = APIClient(
            base_url=final_base_url,
            timeout=api_config.get("timeout", 30),
            headers={"X-Admin-Token": token} if token else {},
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health Check
    def health_check(self) -> dict[str, Any]:
        return self.api.get("/healthz")

    # Job administration
    def list_jobs(
        self,
        status: list[str] | None = None,
        job_type: str | None = None,
        install_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if job_type:
            params["job_type"] = job_type
        if install_id is not None:
            params["install_id"] = install_id
        return self.api.get("/jobs", params)

    def get_job(self, job_id: int) -> dict[str, Any]:
        return self.api.get(f"/jobs/{job_id}")

    def cancel_job(self, job_id: int) -> dict[str, Any]:
        return self.api.post(f"/jobs/{job_id}/cancel")

    def requeue_job(self, job_id: int) -> dict[str, Any]:
        return self.api.post(f"/jobs/{job_id}/requeue")

    def job_stats(self) -> dict[str, Any]:
        return self.api.get("/jobs/stats/overview")

    # Installs
    def get_install_by_order(self, order_id: str) -> dict[str, Any]:
        return self.api.get(f"/installs/by-order/{order_id}")

    def suspend_install(self, install_id: int) -> dict[str, Any]:
        return self.api.post(f"/installs/{install_id}/suspend")

    def resume_install(self, install_id: int) -> dict[str, Any]:
        return self.api.post(f"/installs/{install_id}/resume")
