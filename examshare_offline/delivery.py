import logging
from typing import Any, Dict, Optional

import httpx

from .errors import DeliveryFailure
from .schemas import SubmissionRequest

logger = logging.getLogger(__name__)

def response_detail(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text[:200]

class SubmissionSender:
    """Posts answer submissions to the backend submission endpoint."""

    def __init__(
        self,
        submission_url: str,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        cookies: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.submission_url = submission_url
        self._timeout = timeout
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self._cookies = cookies
        self._transport = transport

    async def send(self, submission: SubmissionRequest) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, headers=self._headers, cookies=self._cookies, transport=self._transport
            ) as client:
                resp = await client.post(self.submission_url, json=submission.delivery_body())
        except httpx.TransportError as e:
            logger.info("Submission for paper %s not delivered, network error: %s", submission.paper_id, e)
            raise DeliveryFailure(f"network error: {e}", network=True) from e

        if not resp.is_success:
            logger.info("Submission for paper %s rejected with %d", submission.paper_id, resp.status_code)
            raise DeliveryFailure(
                f"{resp.status_code} {resp.text[:200]}", status_code=resp.status_code, detail=response_detail(resp)
            )
        return resp
