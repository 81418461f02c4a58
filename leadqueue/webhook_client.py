"""Client for the outbound messaging webhook."""
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from leadqueue import settings
from leadqueue.errors import RateLimited, SendFailure
from leadqueue.logging_conf import logger


@dataclass
class SendResult:
    success: bool
    provider_message_id: Optional[str] = None


class WebhookSender:
    """Hands a lead to the messaging channel through its webhook.

    The channel is a black box: we post the lead reference and the queue
    context, it answers whether it accepted the job. ``Idempotency-Key`` is the
    queue item id, so re-sending after a lost response is safe.
    """

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None,
                 timeout: float = 30, max_retries: int = 3):
        self.url = url or settings.WEBHOOK_URL
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        token = token or settings.WEBHOOK_TOKEN
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def send(self, subject_id: str, payload: Dict[str, Any], idempotency_key: str) -> SendResult:
        """
        Submit one lead for processing.

        Args:
            subject_id: Lead reference
            payload: Queue context (priority, attempt, metadata)
            idempotency_key: Queue item id

        Returns:
            SendResult with the provider's message id

        Raises:
            RateLimited when the channel throttles us, SendFailure otherwise
        """
        body = {
            "action": "process_lead",
            "lead_id": subject_id,
            "idempotency_key": idempotency_key,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        data = self._request(body, idempotency_key)
        if not data.get("success", True):
            raise SendFailure(f"Channel rejected lead {subject_id}: {data.get('error') or 'unknown error'}")

        message_id = data.get("provider_message_id") or data.get("message_id") or data.get("id")
        logger.info(f"Sent lead {subject_id} (key {idempotency_key}, message {message_id})")
        return SendResult(success=True, provider_message_id=message_id)

    def _request(self, body: Dict[str, Any], idempotency_key: str, retry_count: int = 0) -> Dict[str, Any]:
        """POST with retry on server and connection errors."""
        try:
            response = self.session.post(
                self.url,
                json=body,
                headers={"Idempotency-Key": idempotency_key},
                timeout=self.timeout,
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            if retry_count < self.max_retries:
                wait_time = 2 ** retry_count
                logger.warning(f"Webhook unreachable ({e}). Retrying in {wait_time}s...")
                time.sleep(wait_time)
                return self._request(body, idempotency_key, retry_count + 1)
            raise SendFailure(f"Webhook unreachable: {e}")
        except requests.exceptions.RequestException as e:
            raise SendFailure(f"Webhook request failed: {e}")

        if response.status_code == 429:
            retry_after = _retry_after(response.headers.get("Retry-After"))
            logger.warning(f"Rate limited by messaging channel. Retry after {retry_after}s")
            raise RateLimited("Messaging channel rate limit reached", retry_after=retry_after)

        if response.status_code >= 500 and retry_count < self.max_retries:
            wait_time = 2 ** retry_count
            logger.warning(f"Webhook server error {response.status_code}. Retrying in {wait_time}s...")
            time.sleep(wait_time)
            return self._request(body, idempotency_key, retry_count + 1)

        if response.status_code >= 400:
            raise SendFailure(f"Webhook answered {response.status_code}: {response.text[:200]}")

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            raise SendFailure("Webhook answered with invalid JSON")
        return data if isinstance(data, dict) else {}


def _retry_after(value) -> int:
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        return 60
