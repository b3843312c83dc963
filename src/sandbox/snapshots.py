"""Fire-and-forget snapshot requests from inside a sandbox."""

import os

import httpx

from .. import config
from ..log_config import get_logger


class SnapshotClient:
    """
    Asks the control plane to snapshot this sandbox's filesystem.

    Failures are logged and never raised: a missed snapshot must not affect
    the event stream.
    """

    TIMEOUT_SECONDS = 10.0

    def __init__(self, client: httpx.AsyncClient, endpoint_url: str | None = None):
        self.client = client
        self.endpoint_url = endpoint_url or os.environ.get(config.SNAPSHOT_ENDPOINT_URL, "")
        self.log = get_logger("snapshot_client")

    async def request(self, project_id: str, sandbox_id: str | None) -> bool:
        if not self.endpoint_url or not sandbox_id:
            self.log.debug("snapshot.skip", project_id=project_id, reason="not_configured")
            return False
        try:
            response = await self.client.post(
                self.endpoint_url,
                json={"projectId": project_id, "sandboxId": sandbox_id},
                timeout=self.TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            self.log.warn("snapshot.request_error", exc=e, project_id=project_id)
            return False
        if response.status_code >= 400:
            self.log.warn(
                "snapshot.request_failed",
                project_id=project_id,
                http_status=response.status_code,
            )
            return False
        self.log.info("snapshot.requested", project_id=project_id, sandbox_id=sandbox_id)
        return True
