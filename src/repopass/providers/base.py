"""Base payment provider adapter interface."""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl

import httpx

from repopass.credentials import ProviderCredentials
from repopass.exceptions import (
    ConfigurationError,
    InvalidCredentials,
    ProviderAPIError,
    ValidationError,
)
from repopass.models import (
    CheckoutMetadata,
    CreateProductResult,
    PaymentProviderType,
    PaymentResult,
    PriceDetails,
    ProductDetails,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup over any mapping."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def parse_json_body(payload: bytes) -> dict[str, Any]:
    try:
        body = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Invalid JSON payload: {e}") from e
    if not isinstance(body, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    return body


def parse_form_body(payload: bytes) -> dict[str, str]:
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ValidationError("Webhook payload is not valid UTF-8") from e
    form = dict(parse_qsl(text, keep_blank_values=True))
    if not form:
        raise ValidationError("Empty form payload")
    return form


def cents_from_decimal(value: Any) -> int:
    """Convert a major-unit amount ('49.00', 49, 49.5) to integer cents."""
    if value in (None, ""):
        return 0
    try:
        return int(round(float(value) * 100))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid amount: {value!r}", field="amount") from e


def is_truthy_flag(value: Any) -> bool:
    return str(value).strip().lower() in ("true", "1", "yes")


class PaymentProviderAdapter(ABC):
    """Abstract interface for payment provider adapters.

    Every adapter exposes the same capability set. Operations a provider
    cannot perform raise ``UnsupportedOperation`` so callers can branch on
    capability instead of relying on silent no-ops.
    """

    credentials_type: type = object
    default_api_base: str = ""

    def __init__(
        self,
        *,
        site_url: str = "",
        api_base: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.site_url = site_url.rstrip("/")
        self.api_base = (api_base or self.default_api_base).rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    @abstractmethod
    def provider_type(self) -> PaymentProviderType:
        """Return the provider discriminator."""
        pass

    @property
    def name(self) -> str:
        return self.provider_type.value

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, credentials: ProviderCredentials) -> None:
        """Bind credentials and build the HTTP client. No network call."""
        if not isinstance(credentials, self.credentials_type):
            raise InvalidCredentials(
                self.name,
                message=f"{type(credentials).__name__} cannot initialize the {self.name} provider",
            )
        self._configure(credentials)
        self._client = self._build_client(credentials)

    @abstractmethod
    def _configure(self, credentials: Any) -> None:
        """Store provider-specific credential fields."""
        pass

    @abstractmethod
    def _build_client(self, credentials: Any) -> httpx.AsyncClient:
        pass

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise ConfigurationError(f"{self.name} provider is not initialized")
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Perform one API call; non-2xx and transport errors become ProviderAPIError."""
        client = self._require_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise ProviderAPIError(
                f"{self.name} API unreachable: {e}", provider=self.name, transient=True
            ) from e

        if response.status_code >= 400:
            logger.warning(
                "%s API %s %s failed with %s", self.name, method, path, response.status_code
            )
            raise ProviderAPIError(
                f"{self.name} API error {response.status_code}: {self._error_detail(response)}",
                provider=self.name,
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProviderAPIError(
                f"{self.name} API returned a non-JSON body", provider=self.name, transient=False
            ) from e

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.reason_phrase
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                return str(error.get("message") or error)
            if error:
                return str(error)
            if body.get("errors"):
                return str(body["errors"])
            if body.get("message"):
                return str(body["message"])
        return response.reason_phrase

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_product(
        self,
        product: ProductDetails,
        price: PriceDetails,
    ) -> CreateProductResult:
        """Create a remote product/price pair."""
        pass

    @abstractmethod
    async def update_product(self, product_id: str, product: ProductDetails) -> None:
        pass

    @abstractmethod
    async def update_price(
        self,
        product_id: str,
        price_id: str,
        price: PriceDetails,
    ) -> str:
        """Apply a new price; returns the price id checkout should use from now on."""
        pass

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_checkout_url(
        self,
        price_id: str,
        metadata: CheckoutMetadata,
        *,
        recurring: bool = False,
    ) -> str:
        """Create a hosted checkout URL carrying ``metadata`` through to the webhook."""
        pass

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        """Providers without signed webhooks accept every delivery."""
        return True

    @abstractmethod
    async def parse_event(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """Classify a raw webhook delivery into a canonical event."""
        pass

    @abstractmethod
    async def handle_payment_success(self, data: dict[str, Any]) -> PaymentResult:
        pass

    @abstractmethod
    async def handle_payment_failure(self, data: dict[str, Any]) -> PaymentResult:
        pass

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str) -> None:
        pass
