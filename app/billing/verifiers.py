"""Payment verification adapters, one per platform.

Each adapter turns an opaque reference (Paystack transaction reference, App
Store receipt, Play purchase token) into a ``VerificationResult`` by calling
the platform. Adapters only read: calling ``verify`` twice is harmless.
Transport failures come back as ``valid=False``; nothing here raises for a
declined or unreachable payment.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account

from app.billing.exceptions import BillingError, UnknownPlatform

logger = logging.getLogger(__name__)

PLATFORM_PAYSTACK = "paystack"
PLATFORM_APPLE = "apple"
PLATFORM_GOOGLE_PLAY = "google_play"
PLATFORMS = (PLATFORM_PAYSTACK, PLATFORM_APPLE, PLATFORM_GOOGLE_PLAY)

# verifyReceipt: "This receipt is from the test environment, but it was sent to the production environment"
APPLE_STATUS_SANDBOX_RECEIPT = 21007
GOOGLE_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
GOOGLE_PUBLISHER_URL = (
    "https://androidpublisher.googleapis.com/androidpublisher/v3/applications/"
    "{package}/purchases/subscriptions/{product}/tokens/{token}"
)


@dataclass
class VerificationResult:
    valid: bool
    platform: str
    reference: str
    transaction_id: Optional[str] = None
    amount: Optional[int] = None  # minor units; None when the platform does not report it
    currency: Optional[str] = None
    customer_ref: Optional[str] = None
    customer_email: Optional[str] = None
    product_id: Optional[str] = None
    order_id: Optional[str] = None
    subscription_ref: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def idempotency_reference(self) -> str:
        return self.transaction_id or self.reference

    @classmethod
    def invalid(cls, platform: str, reference: str, error: str, raw: Optional[dict] = None) -> "VerificationResult":
        return cls(valid=False, platform=platform, reference=reference, error=error, raw=raw or {})


class PaymentVerifier:
    platform = ""

    def verify(self, reference: str, **hints) -> VerificationResult:
        raise NotImplementedError


class PaystackVerifier(PaymentVerifier):
    """Recurring card gateway: valid iff the transaction status is ``success``."""

    platform = PLATFORM_PAYSTACK

    def __init__(self, secret_key: Optional[str], base_url: str = "https://api.paystack.co",
                 timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}

    def verify(self, reference: str, **hints) -> VerificationResult:
        if not self.secret_key:
            return VerificationResult.invalid(self.platform, reference, "paystack_not_configured")
        try:
            resp = self.http.get(
                f"{self.base_url}/transaction/verify/{reference}",
                headers=self._headers(),
                timeout=self.timeout,
            )
            body = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("paystack verify transport error ref=%s: %s", reference, exc)
            return VerificationResult.invalid(self.platform, reference, f"paystack_unreachable: {exc}")

        data = body.get("data") or {}
        if not (body.get("status") and data.get("status") == "success"):
            message = data.get("gateway_response") or body.get("message") or "Transaction verification failed"
            return VerificationResult.invalid(self.platform, reference, message, raw=body)

        customer = data.get("customer") or {}
        plan = data.get("plan") or {}
        subscription = data.get("subscription") or {}
        return VerificationResult(
            valid=True,
            platform=self.platform,
            reference=reference,
            transaction_id=reference,
            amount=int(data.get("amount") or 0),
            currency=data.get("currency"),
            customer_ref=customer.get("customer_code"),
            customer_email=customer.get("email"),
            order_id=str(data["id"]) if data.get("id") is not None else None,
            subscription_ref=subscription.get("subscription_code") or (plan.get("plan_code") if isinstance(plan, dict) else None),
            raw={
                "customerCode": customer.get("customer_code"),
                "customerEmail": customer.get("email"),
                "authorizationCode": (data.get("authorization") or {}).get("authorization_code"),
                "planCode": plan.get("plan_code") if isinstance(plan, dict) else plan,
                "paidAt": data.get("paid_at"),
            },
        )

    def create_subscription(self, email: str, plan_code: str) -> dict:
        """Create a recurring subscription on the gateway for an existing customer."""
        if not self.secret_key:
            raise BillingError("Paystack is not configured")
        try:
            resp = self.http.post(
                f"{self.base_url}/subscription",
                headers=self._headers(),
                json={"customer": email, "plan": plan_code},
                timeout=self.timeout,
            )
            body = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise BillingError(f"Paystack subscription create failed: {exc}") from exc
        if not body.get("status"):
            raise BillingError(body.get("message") or "Failed to create Paystack subscription")
        return body.get("data") or {}


class AppleReceiptVerifier(PaymentVerifier):
    """verifyReceipt with the production-then-sandbox fallback Apple documents for 21007."""

    platform = PLATFORM_APPLE

    def __init__(self, shared_secret: Optional[str],
                 production_url: str = "https://buy.itunes.apple.com/verifyReceipt",
                 sandbox_url: str = "https://sandbox.itunes.apple.com/verifyReceipt",
                 timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.shared_secret = shared_secret
        self.production_url = production_url
        self.sandbox_url = sandbox_url
        self.timeout = timeout
        self.http = session or requests.Session()

    def _post(self, url: str, receipt_data: str) -> dict:
        payload = {"receipt-data": receipt_data, "exclude-old-transactions": True}
        if self.shared_secret:
            payload["password"] = self.shared_secret
        resp = self.http.post(url, json=payload, timeout=self.timeout)
        return resp.json()

    @staticmethod
    def _latest_transaction(body: dict) -> dict:
        entries = body.get("latest_receipt_info") or (body.get("receipt") or {}).get("in_app") or []
        if not entries:
            return {}
        return max(entries, key=lambda e: int(e.get("purchase_date_ms") or 0))

    def verify(self, reference: str, **hints) -> VerificationResult:
        try:
            body = self._post(self.production_url, reference)
            if body.get("status") == APPLE_STATUS_SANDBOX_RECEIPT:
                body = self._post(self.sandbox_url, reference)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("apple verifyReceipt transport error: %s", exc)
            return VerificationResult.invalid(self.platform, reference, f"apple_unreachable: {exc}")

        status = body.get("status")
        if status != 0:
            return VerificationResult.invalid(
                self.platform, reference, f"Apple verification failed with status: {status}",
                raw={"status": status},
            )

        latest = self._latest_transaction(body)
        transaction_id = latest.get("transaction_id") or hints.get("transaction_id")
        if not transaction_id:
            return VerificationResult.invalid(self.platform, reference, "apple_receipt_has_no_transactions")
        return VerificationResult(
            valid=True,
            platform=self.platform,
            reference=reference,
            transaction_id=transaction_id,
            product_id=latest.get("product_id") or hints.get("product_id"),
            order_id=latest.get("original_transaction_id"),
            subscription_ref=latest.get("original_transaction_id"),
            raw={
                "environment": body.get("environment"),
                "expiresDateMs": latest.get("expires_date_ms"),
                "originalTransactionId": latest.get("original_transaction_id"),
            },
        )


class GooglePlayVerifier(PaymentVerifier):
    """Android Publisher ``purchases.subscriptions.get``."""

    platform = PLATFORM_GOOGLE_PLAY

    def __init__(self, package_name: str, service_account_key: Optional[str] = None,
                 allow_unverified: bool = False, timeout: float = 10.0, session=None):
        self.package_name = package_name
        self.service_account_key = service_account_key
        self.allow_unverified = allow_unverified
        self.timeout = timeout
        self._session = session

    @property
    def configured(self) -> bool:
        return bool(self.service_account_key) or self._session is not None

    def _authorized_session(self):
        if self._session is None:
            info = json.loads(self.service_account_key)
            credentials = service_account.Credentials.from_service_account_info(info, scopes=[GOOGLE_PUBLISHER_SCOPE])
            self._session = AuthorizedSession(credentials)
        return self._session

    def verify(self, reference: str, **hints) -> VerificationResult:
        product_id = hints.get("product_id")
        if not self.configured:
            if not self.allow_unverified:
                return VerificationResult.invalid(self.platform, reference, "google_play_not_configured")
            logger.warning(
                "google play purchase accepted WITHOUT verification (GOOGLE_PLAY_ALLOW_UNVERIFIED) token=%s...",
                reference[:10],
            )
            return VerificationResult(
                valid=True,
                platform=self.platform,
                reference=reference,
                transaction_id=hints.get("order_id") or reference,
                product_id=product_id,
                order_id=hints.get("order_id"),
                subscription_ref=hints.get("subscription_id"),
                raw={"unverified": True},
            )

        if not product_id:
            return VerificationResult.invalid(self.platform, reference, "product_id is required for Google Play verification")

        url = GOOGLE_PUBLISHER_URL.format(package=self.package_name, product=product_id, token=reference)
        try:
            resp = self._authorized_session().get(url, timeout=self.timeout)
            body = resp.json()
        except (requests.RequestException, GoogleAuthError, ValueError) as exc:
            # GoogleAuthError covers revoked keys (RefreshError) and token endpoint outages (TransportError)
            logger.warning("google play verify transport error: %s", exc)
            return VerificationResult.invalid(self.platform, reference, f"google_play_unreachable: {exc}")

        if resp.status_code != 200:
            message = (body.get("error") or {}).get("message") if isinstance(body, dict) else None
            return VerificationResult.invalid(
                self.platform, reference, f"Google Play verification failed: {message or resp.status_code}",
            )
        # paymentState 0 = pending; 1 = received; 2 = free trial; 3 = deferred
        if body.get("paymentState") not in (1, 2):
            return VerificationResult.invalid(
                self.platform, reference, f"Google Play payment not received (paymentState={body.get('paymentState')})",
                raw={"paymentState": body.get("paymentState")},
            )

        micros = body.get("priceAmountMicros")
        # The token lives for the whole subscription; each renewal gets a new orderId (GPA.x, GPA.x..0, ...)
        return VerificationResult(
            valid=True,
            platform=self.platform,
            reference=reference,
            transaction_id=body.get("orderId") or reference,
            amount=int(micros) // 10_000 if micros is not None else None,
            currency=body.get("priceCurrencyCode"),
            product_id=product_id,
            order_id=body.get("orderId"),
            subscription_ref=hints.get("subscription_id") or product_id,
            raw={
                "expiryTimeMillis": body.get("expiryTimeMillis"),
                "autoRenewing": body.get("autoRenewing"),
                "paymentState": body.get("paymentState"),
            },
        )


def build_verifiers(config) -> Dict[str, PaymentVerifier]:
    """Resolve the platform -> adapter mapping once, from app config."""
    timeout = float(config.get("BILLING_VERIFY_TIMEOUT", 10))
    allow_unverified = bool(config.get("GOOGLE_PLAY_ALLOW_UNVERIFIED")) and config.get("APP_ENV") != "production"
    return {
        PLATFORM_PAYSTACK: PaystackVerifier(
            config.get("PAYSTACK_SECRET_KEY"),
            base_url=config.get("PAYSTACK_BASE_URL", "https://api.paystack.co"),
            timeout=timeout,
        ),
        PLATFORM_APPLE: AppleReceiptVerifier(
            config.get("APPLE_SHARED_SECRET"),
            production_url=config.get("APPLE_VERIFY_URL", "https://buy.itunes.apple.com/verifyReceipt"),
            sandbox_url=config.get("APPLE_SANDBOX_VERIFY_URL", "https://sandbox.itunes.apple.com/verifyReceipt"),
            timeout=timeout,
        ),
        PLATFORM_GOOGLE_PLAY: GooglePlayVerifier(
            config.get("GOOGLE_PLAY_PACKAGE_NAME", ""),
            service_account_key=config.get("GOOGLE_SERVICE_ACCOUNT_KEY"),
            allow_unverified=allow_unverified,
            timeout=timeout,
        ),
    }


def get_verifier(verifiers: Dict[str, PaymentVerifier], platform: str) -> PaymentVerifier:
    try:
        return verifiers[platform]
    except KeyError:
        raise UnknownPlatform(f"Unsupported payment platform {platform!r}") from None
