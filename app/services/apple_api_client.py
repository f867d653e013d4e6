"""
App Store Server API client.

Read-only calls used for reconciliation: subscription statuses, transaction
history and order lookup.
https://developer.apple.com/documentation/appstoreserverapi

Failures are raised as UpstreamError and never retried here; retry policy
belongs to the caller.
"""

import time
from urllib.parse import quote

import httpx
from structlog import get_logger

from app.exceptions import UpstreamError
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.payload_verifier import decode_payload
from app.services.token_issuer import AppleTokenIssuer

logger = get_logger(__name__)

PRODUCTION_BASE_URL = "https://api.storekit.itunes.apple.com"
SANDBOX_BASE_URL = "https://api.storekit-sandbox.itunes.apple.com"

# Guards against a misbehaving upstream that never stops reporting hasMore
MAX_HISTORY_PAGES = 50


class AppleAPIClient:
    """
    Authenticated client for the App Store Server API.

    Every request carries a freshly issued token and a bounded timeout.
    """

    def __init__(
        self,
        token_issuer: AppleTokenIssuer,
        environment: str = "sandbox",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token_issuer = token_issuer
        self.environment = environment
        self.timeout_seconds = timeout_seconds
        self._transport = transport

        logger.info(
            "apple_api_client_initialized",
            environment=environment,
            base_url=self.base_url,
        )

    @property
    def base_url(self) -> str:
        """Production or sandbox host, chosen by the deployment environment."""
        if self.environment.lower() == "production":
            return PRODUCTION_BASE_URL
        return SANDBOX_BASE_URL

    async def _get(
        self,
        operation: str,
        endpoint: str,
        params: dict[str, str] | None = None,
    ) -> dict[str, object]:
        """Issue an authenticated GET and unwrap a signedPayload body if present."""
        url = f"{self.base_url}{endpoint}"
        headers = {"Authorization": f"Bearer {self.token_issuer.issue_token()}"}
        start = time.perf_counter()

        with trace_operation("apple_api_request", operation=operation) as span:
            try:
                async with httpx.AsyncClient(
                    transport=self._transport, timeout=self.timeout_seconds
                ) as client:
                    response = await client.get(url, headers=headers, params=params)
            except httpx.HTTPError as exc:
                metrics.record_apple_api_call(operation, 0, time.perf_counter() - start)
                logger.error(
                    "apple_api_request_failed",
                    operation=operation,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise UpstreamError(f"{operation} request failed: {exc}") from exc

            span.set_attribute("http.status_code", response.status_code)
            metrics.record_apple_api_call(
                operation, response.status_code, time.perf_counter() - start
            )

            if not response.is_success:
                logger.error(
                    "apple_api_error",
                    operation=operation,
                    status=response.status_code,
                    error=response.text[:500],
                )
                raise UpstreamError(
                    f"{operation} returned HTTP {response.status_code}",
                    status_code=response.status_code,
                    body=response.text,
                )

            try:
                result = response.json()
            except ValueError as exc:
                raise UpstreamError(
                    f"{operation} returned a non-JSON body",
                    status_code=response.status_code,
                    body=response.text,
                ) from exc

        if not isinstance(result, dict):
            raise UpstreamError(
                f"{operation} returned an unexpected body",
                status_code=response.status_code,
                body=response.text,
            )

        signed_payload = result.get("signedPayload")
        if isinstance(signed_payload, str):
            return decode_payload(signed_payload)
        return result

    async def get_subscription_statuses(self, original_transaction_id: str) -> dict[str, object]:
        """
        Get the status of every subscription in the transaction's group(s).

        Args:
            original_transaction_id: Any transaction id of the subscription

        Raises:
            UpstreamError: On non-2xx responses or network failure
        """
        logger.info(
            "getting_apple_subscription_statuses",
            original_transaction_id=original_transaction_id,
        )
        return await self._get(
            "subscription_statuses",
            f"/v1/subscriptions/{quote(original_transaction_id, safe='')}",
        )

    async def get_transaction_history(self, original_transaction_id: str) -> dict[str, object]:
        """
        Get the customer's transaction history, following pagination.

        Pages are joined into one ``signedTransactions`` list; the remaining
        fields come from the last page.
        """
        logger.info(
            "getting_apple_transaction_history",
            original_transaction_id=original_transaction_id,
        )

        endpoint = f"/v2/history/{quote(original_transaction_id, safe='')}"
        transactions: list[object] = []
        revision: str | None = None
        page: dict[str, object] = {}

        for _ in range(MAX_HISTORY_PAGES):
            params = {"revision": revision} if revision else None
            page = await self._get("transaction_history", endpoint, params=params)
            signed = page.get("signedTransactions")
            if isinstance(signed, list):
                transactions.extend(signed)
            if not page.get("hasMore"):
                break
            revision = str(page.get("revision") or "") or None
            if revision is None:
                break
        else:
            logger.warning(
                "apple_transaction_history_truncated",
                original_transaction_id=original_transaction_id,
                pages=MAX_HISTORY_PAGES,
            )

        logger.info(
            "apple_transaction_history_retrieved",
            original_transaction_id=original_transaction_id,
            count=len(transactions),
        )
        return {**page, "signedTransactions": transactions}

    async def get_order_lookup(self, order_id: str) -> dict[str, object]:
        """Look up the transactions of a customer order by its order id."""
        logger.info("getting_apple_order_lookup", order_id=order_id)
        return await self._get("order_lookup", f"/v1/lookup/{quote(order_id, safe='')}")
