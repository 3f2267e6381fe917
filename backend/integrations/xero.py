"""
Xero Accounting Integration

OAuth2 (authorization code + refresh token) against Xero identity, tokens
persisted Fernet-encrypted in ``xero_tokens``, and DRAFT sales invoices
(ACCREC) raised from orders.

Startup calls ``initialize()`` once: it loads the newest active token set,
refreshes it if expired and sets ``ready``. There are no background timers;
tokens are refreshed lazily before each API call.
"""

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog
from sqlalchemy import delete, select, update
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import get_settings
from core.errors import AppError, ServiceUnavailableError
from core.security import decrypt, encrypt
from db.models import XeroToken

logger = structlog.get_logger()

AUTHORIZE_URL = "https://login.xero.com/identity/connect/authorize"
TOKEN_URL = "https://identity.xero.com/connect/token"
CONNECTIONS_URL = "https://api.xero.com/connections"
API_BASE_URL = "https://api.xero.com/api.xro/2.0"
SCOPES = (
    "openid",
    "profile",
    "email",
    "accounting.settings",
    "accounting.transactions",
    "accounting.contacts",
    "offline_access",
)
EXPIRY_LEEWAY = timedelta(seconds=60)


class XeroError(AppError):
    """Xero rejected a request or returned something unusable."""

    status_code = 502


class XeroNotConfiguredError(ServiceUnavailableError):
    def __init__(self):
        super().__init__("Xero integration not configured")


class XeroAuthRequiredError(XeroError):
    status_code = 409

    def __init__(self, message: str = "Xero authentication required", auth_url: str | None = None):
        super().__init__(message, errors=[{"field": "auth_url", "message": auth_url}] if auth_url else None)
        self.auth_url = auth_url


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str
    expires_at: datetime
    id_token: str | None = None
    scope: str | None = None
    token_type: str = "Bearer"

    def expired(self, now: datetime | None = None) -> bool:
        return self.expires_at - EXPIRY_LEEWAY <= (now or datetime.utcnow())

    @classmethod
    def from_response(cls, data: dict, previous_refresh_token: str | None = None) -> "TokenSet":
        """Build from a token endpoint response; keeps the old refresh token if none is returned."""
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh_token or "",
            expires_at=datetime.utcnow() + timedelta(seconds=int(data.get("expires_in", 1800))),
            id_token=data.get("id_token"),
            scope=data.get("scope"),
            token_type=data.get("token_type", "Bearer"),
        )


# ──────────────────────────────────────────────────────────────────────────
# Invoice mapping
# ──────────────────────────────────────────────────────────────────────────


def build_contact_payload(client: dict) -> dict:
    name = client.get("name") or "Unknown Client"
    first, _, last = name.partition(" ")
    contact: dict[str, Any] = {"Name": name, "FirstName": first, "LastName": last or " "}
    if client.get("email"):
        contact["EmailAddress"] = client["email"]
    if client.get("phone"):
        contact["Phones"] = [{"PhoneType": "MOBILE", "PhoneNumber": client["phone"]}]
    return contact


def build_invoice_payload(
    order: dict,
    contact_id: str,
    *,
    account_code: str,
    due_days: int,
    today: date | None = None,
) -> dict:
    """Map an order view (live or archived) to a DRAFT ACCREC invoice."""
    today = today or date.today()
    line_items = [
        {
            "Description": item.get("species_name") or "Coral",
            "Quantity": item["quantity"],
            "UnitAmount": float(item.get("price_at_order") or 0),
            "AccountCode": account_code,
            "TaxType": "NONE",
        }
        for item in order.get("items") or []
    ]
    return {
        "Type": "ACCREC",
        "Contact": {"ContactID": contact_id},
        "Date": today.isoformat(),
        "DueDate": (today + timedelta(days=due_days)).isoformat(),
        "LineItems": line_items,
        "Reference": f"Order #{order['order_id']}",
        "Status": "DRAFT",
    }


def _escape_where(value: str) -> str:
    return value.replace('"', '\\"')


# ──────────────────────────────────────────────────────────────────────────
# Service
# ──────────────────────────────────────────────────────────────────────────


class XeroService:
    """Client for Xero OAuth and accounting API interactions."""

    def __init__(self, session_factory=None, transport: httpx.AsyncBaseTransport | None = None):
        if session_factory is None:
            from db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self.settings = get_settings()
        self.session_factory = session_factory
        self.transport = transport
        self.token_set: TokenSet | None = None
        self.tenant_id: str | None = None
        self.ready = asyncio.Event()
        self._token_lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return self.settings.xero_configured

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=30.0)

    # ─── Lifecycle ─────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Load the active token set and refresh it if expired. Idempotent."""
        if self.ready.is_set():
            return
        try:
            if self.configured:
                await self._load_tokens()
                if self.token_set and self.token_set.expired():
                    logger.info("xero.refresh_on_startup", tenant_id=self.tenant_id)
                    try:
                        await self.refresh()
                    except XeroError as exc:
                        logger.warning("xero.startup_refresh_failed", error=exc.message)
            else:
                logger.info("xero.not_configured")
        finally:
            self.ready.set()
        logger.info("xero.initialized", connected=self.token_set is not None, tenant_id=self.tenant_id)

    async def wait_ready(self, timeout: float = 10.0) -> None:
        await asyncio.wait_for(self.ready.wait(), timeout=timeout)

    async def _load_tokens(self) -> None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(XeroToken)
                .where(XeroToken.active.is_(True))
                .order_by(XeroToken.updated_at.desc(), XeroToken.token_id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
        if row is None:
            self.token_set = None
            self.tenant_id = self.settings.xero_tenant_id or None
            return
        self.tenant_id = row.tenant_id
        self.token_set = TokenSet(
            access_token=decrypt(row.access_token_encrypted),
            refresh_token=decrypt(row.refresh_token_encrypted),
            expires_at=row.expires_at,
            id_token=row.id_token,
            scope=row.scope,
            token_type=row.token_type or "Bearer",
        )

    async def _save_tokens(self, token_set: TokenSet) -> None:
        async with self.session_factory() as db:
            await db.execute(update(XeroToken).where(XeroToken.active.is_(True)).values(active=False))
            db.add(
                XeroToken(
                    tenant_id=self.tenant_id,
                    access_token_encrypted=encrypt(token_set.access_token),
                    refresh_token_encrypted=encrypt(token_set.refresh_token),
                    id_token=token_set.id_token,
                    expires_at=token_set.expires_at,
                    scope=token_set.scope,
                    token_type=token_set.token_type,
                    active=True,
                )
            )
            await db.commit()
        self.token_set = token_set

    async def _clear_tokens(self) -> None:
        async with self.session_factory() as db:
            await db.execute(delete(XeroToken))
            await db.commit()
        self.token_set = None
        self.tenant_id = None

    # ─── OAuth ─────────────────────────────────────────────────────────────

    def consent_url(self, state: str | None = None) -> str:
        if not self.configured:
            raise XeroNotConfiguredError()
        params = {
            "response_type": "code",
            "client_id": self.settings.xero_client_id,
            "redirect_uri": self.settings.xero_redirect_uri,
            "scope": " ".join(SCOPES),
        }
        if state:
            params["state"] = state
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _token_request(self, data: dict) -> dict:
        async with self._client() as client:
            response = await client.post(
                TOKEN_URL,
                data=data,
                auth=(self.settings.xero_client_id, self.settings.xero_client_secret),
                headers={"Accept": "application/json"},
            )
        if response.status_code >= 400:
            raise XeroError(f"Xero token request failed with status {response.status_code}")
        return response.json()

    async def exchange_code(self, code: str) -> dict:
        """Complete the consent flow: swap the code for tokens and pick the tenant."""
        if not self.configured:
            raise XeroNotConfiguredError()
        data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.settings.xero_redirect_uri,
            }
        )
        token_set = TokenSet.from_response(data)

        async with self._client() as client:
            response = await client.get(
                CONNECTIONS_URL,
                headers={"Authorization": f"Bearer {token_set.access_token}", "Accept": "application/json"},
            )
        if response.status_code >= 400:
            raise XeroError(f"Failed to get Xero connections: {response.status_code}")
        connections = response.json() or []
        if not connections:
            raise XeroError("No Xero organisations connected to this account")

        tenant_ids = [connection.get("tenantId") for connection in connections]
        preferred = self.settings.xero_tenant_id
        self.tenant_id = preferred if preferred in tenant_ids else tenant_ids[0]
        await self._save_tokens(token_set)
        logger.info("xero.connected", tenant_id=self.tenant_id)
        return {"success": True, "tenant_id": self.tenant_id}

    async def refresh(self) -> TokenSet:
        """
        Refresh the access token. A rejected refresh token clears every
        stored token and requires the consent flow again.
        """
        if self.token_set is None:
            raise XeroAuthRequiredError(auth_url=self._safe_consent_url())
        previous_refresh = self.token_set.refresh_token
        try:
            data = await self._token_request({"grant_type": "refresh_token", "refresh_token": previous_refresh})
        except (XeroError, httpx.TransportError) as exc:
            logger.error("xero.refresh_failed", error=str(exc))
            await self._clear_tokens()
            raise XeroAuthRequiredError(
                "Xero authentication required (token expired)",
                auth_url=self._safe_consent_url(),
            ) from exc

        token_set = TokenSet.from_response(data, previous_refresh_token=previous_refresh)
        await self._save_tokens(token_set)
        logger.info("xero.token_refreshed", tenant_id=self.tenant_id, expires_at=token_set.expires_at.isoformat())
        return token_set

    async def ensure_token(self) -> TokenSet:
        if not self.configured:
            raise XeroNotConfiguredError()
        async with self._token_lock:
            if self.token_set is None:
                await self._load_tokens()
            if self.token_set is None or not self.tenant_id:
                raise XeroAuthRequiredError(auth_url=self._safe_consent_url())
            if self.token_set.expired():
                return await self.refresh()
            return self.token_set

    def _safe_consent_url(self) -> str | None:
        return self.consent_url() if self.configured else None

    # ─── Accounting API ────────────────────────────────────────────────────

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _api(self, method: str, path: str, **kwargs) -> dict:
        token_set = await self.ensure_token()
        headers = {
            "Authorization": f"Bearer {token_set.access_token}",
            "Accept": "application/json",
            "Xero-Tenant-Id": self.tenant_id,
        }
        async with self._client() as client:
            response = await client.request(method, f"{API_BASE_URL}{path}", headers=headers, **kwargs)
        if response.status_code >= 400:
            raise XeroError(f"Xero API {method} {path} failed with status {response.status_code}: {response.text}")
        return response.json()

    async def find_or_create_contact(self, client: dict) -> dict:
        name = client.get("name") or "Unknown Client"
        where = f'Name=="{_escape_where(name)}"'
        if client.get("email"):
            where += f' OR EmailAddress=="{_escape_where(client["email"])}"'
        data = await self._api("GET", "/Contacts", params={"where": where})
        contacts = data.get("Contacts") or []
        if contacts:
            return contacts[0]
        created = await self._api("POST", "/Contacts", json={"Contacts": [build_contact_payload(client)]})
        logger.info("xero.contact_created", name=name)
        return created["Contacts"][0]

    async def generate_invoice(self, order: dict) -> dict:
        """Raise a DRAFT invoice for an order view (see orders.service.order_view)."""
        client = order.get("client")
        if not client:
            raise XeroError("Client information not available")
        contact = await self.find_or_create_contact(client)
        payload = build_invoice_payload(
            order,
            contact["ContactID"],
            account_code=self.settings.xero_account_code,
            due_days=self.settings.xero_invoice_due_days,
        )
        data = await self._api("POST", "/Invoices", json={"Invoices": [payload]})
        invoice = data["Invoices"][0]
        logger.info("xero.invoice_created", order_id=order["order_id"], invoice_id=invoice.get("InvoiceID"))
        return {
            "id": invoice.get("InvoiceID"),
            "invoice_number": invoice.get("InvoiceNumber"),
            "reference": invoice.get("Reference"),
            "status": invoice.get("Status", "DRAFT"),
            "total": invoice.get("Total"),
            "url": invoice.get("OnlineInvoiceUrl"),
        }

    async def status(self) -> dict:
        if not self.configured:
            return {"connected": False, "message": "Xero integration not configured"}
        try:
            data = await self._api("GET", "/Organisation")
        except XeroAuthRequiredError as exc:
            return {"connected": False, "message": exc.message, "auth_url": exc.auth_url}
        except (XeroError, httpx.TransportError) as exc:
            return {
                "connected": False,
                "message": "Error connecting to Xero",
                "error": str(exc),
                "auth_url": self._safe_consent_url(),
            }
        organisations = data.get("Organisations") or [{}]
        return {"connected": True, "organisation": organisations[0].get("Name"), "tenant_id": self.tenant_id}

    async def disconnect(self) -> None:
        await self._clear_tokens()
        logger.info("xero.disconnected")


_service: XeroService | None = None


def get_xero_service() -> XeroService:
    """Process-wide Xero service (FastAPI dependency)."""
    global _service
    if _service is None:
        _service = XeroService()
    return _service
