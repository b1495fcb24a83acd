"""
Outbound e-mail through an HTTP mail API.
Sends rendered notifications with retry and circuit breaker protection.
"""

from typing import List, Optional
import re
import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from pybreaker import CircuitBreaker, CircuitBreakerError
import structlog

from approval_workflow.models.notification_schemas import EmailResult
from approval_workflow.config.settings import settings

logger = structlog.get_logger()

# Circuit breaker for the mail API to prevent cascading failures
email_breaker = CircuitBreaker(
    fail_max=settings.circuit_breaker_fail_max,
    reset_timeout=settings.circuit_breaker_timeout_duration,
    name="email_api"
)

_ADDRESS = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class EmailAdapter:
    """
    Adapter for the transactional mail API.
    send_email never raises; every failure becomes an EmailResult.
    """

    def __init__(
        self,
        api_url: str = None,
        api_key: str = None,
        from_address: str = None,
        from_name: str = None,
        timeout: float = None,
    ):
        self.api_url = api_url or settings.email_api_url
        self.api_key = api_key or settings.email_api_key
        self.from_address = from_address or settings.email_from_address
        self.from_name = from_name or settings.email_from_name
        self.timeout = timeout or settings.email_request_timeout_seconds

        if not self.api_url:
            logger.warning("email_not_configured", message="EMAIL_API_URL not set")

    def is_configured(self) -> bool:
        """Check if the mail API is properly configured"""
        return bool(self.api_url and self.from_address)

    def build_payload(
        self,
        to: str,
        subject: str,
        body: str,
        from_name: Optional[str] = None,
        cc: Optional[List[str]] = None,
        bcc: Optional[List[str]] = None,
    ) -> dict:
        payload = {
            "from": {"email": self.from_address, "name": from_name or self.from_name},
            "to": [{"email": to}],
            "subject": subject,
            "html": body,
        }
        if cc:
            payload["cc"] = [{"email": address} for address in cc]
        if bcc:
            payload["bcc"] = [{"email": address} for address in bcc]
        return payload

    async def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        from_name: Optional[str] = None,
        cc: Optional[List[str]] = None,
        bcc: Optional[List[str]] = None,
    ) -> EmailResult:
        if not self.is_configured():
            logger.warning("email_send_skipped", reason="Mail API not configured", to=to)
            return EmailResult(success=False, error="Email provider not configured", error_code="NOT_CONFIGURED")

        if not to or not _ADDRESS.match(to):
            return EmailResult(success=False, error=f"Invalid recipient address: {to}", error_code="INVALID_ADDRESS")

        payload = self.build_payload(to, subject, body, from_name, cc, bcc)

        try:
            data = await self._deliver(payload)
        except CircuitBreakerError:
            logger.error(
                "email_circuit_breaker_open",
                to=to,
                message="Circuit breaker is open - too many mail API failures"
            )
            return EmailResult(success=False, error="circuit_breaker_open", error_code="CIRCUIT_OPEN")
        except httpx.HTTPStatusError as e:
            logger.error("email_api_error", to=to, status_code=e.response.status_code, error=str(e))
            return EmailResult(success=False, error=f"Mail API returned {e.response.status_code}", error_code="HTTP_ERROR")
        except Exception as e:
            logger.error("email_send_failed", to=to, error=str(e), exc_info=True)
            return EmailResult(success=False, error=str(e), error_code="TRANSPORT_ERROR")

        message_id = data.get("message_id") or data.get("id")
        logger.info("email_sent", to=to, message_id=message_id)
        return EmailResult(success=True, message_id=message_id)

    @retry(
        stop=stop_after_attempt(settings.max_retry_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=settings.retry_initial_wait_seconds,
            max=settings.retry_max_wait_seconds,
        ),
        retry=retry_if_exception_type((httpx.TransportError, httpx.TimeoutException)),
        reraise=True,
    )
    async def _deliver(self, payload: dict) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        # The breaker wraps the awaited request; its decorator form does not support coroutines
        with email_breaker.calling():
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
                response.raise_for_status()
                return response.json() if response.content else {}
