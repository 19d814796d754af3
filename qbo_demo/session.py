"""
Browser session state.

The cookie set by Starlette's SessionMiddleware only carries a random
session id; the values (tokens, fetched lists, last results) live in a
process-local backend keyed by that id, so customer and item lists do not
run into cookie size limits.

Routes are the only code that touches the session. Services receive an
AuthContext and return plain data.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from starlette.requests import Request

from qbo_demo.exceptions import ValidationError

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


class SessionKeys:
    """Names of the values kept per browser session."""

    SID = "sid"
    FLASHES = "_flashes"

    # OAuth
    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"
    REALM_ID = "realm_id"
    GRANTED_SCOPE = "granted_scope"
    AUTH_TIMESTAMP = "auth_timestamp"
    OAUTH_STATE = "oauth_state"
    CALLBACK_MARKER = "callback_marker"

    # Lookups
    CUSTOMERS = "customers"
    CUSTOMER_MAP = "customer_map"
    ITEMS = "items"
    ITEM_MAP = "item_map"
    VENDORS = "vendors"
    EXPENSE_ACCOUNTS = "expense_accounts"

    # Projects
    PROJECT = "project"
    PROJECT_SOURCE = "project_source"
    PROJECTS = "projects"
    PROJECTS_ERROR = "projects_error"
    PROJECTS_MULTI = "projects_multi"
    PROJECT_DELETE_RESULT = "project_delete_result"
    PROJECT_DELETE_MULTI_RESULTS = "project_delete_multi_results"

    # Last write results
    INVOICE = "invoice"
    ESTIMATE = "estimate"
    SALES_RECEIPT = "sales_receipt"
    BILL = "bill"


# Everything fetched from or written to a company; meaningless once the
# company context changes.
COMPANY_DATA_KEYS = (
    SessionKeys.CUSTOMERS,
    SessionKeys.CUSTOMER_MAP,
    SessionKeys.ITEMS,
    SessionKeys.ITEM_MAP,
    SessionKeys.VENDORS,
    SessionKeys.EXPENSE_ACCOUNTS,
    SessionKeys.PROJECT,
    SessionKeys.PROJECT_SOURCE,
    SessionKeys.PROJECTS,
    SessionKeys.PROJECTS_ERROR,
    SessionKeys.PROJECTS_MULTI,
    SessionKeys.PROJECT_DELETE_RESULT,
    SessionKeys.PROJECT_DELETE_MULTI_RESULTS,
    SessionKeys.INVOICE,
    SessionKeys.ESTIMATE,
    SessionKeys.SALES_RECEIPT,
    SessionKeys.BILL,
)

WRITE_RESULT_KEYS = (
    SessionKeys.INVOICE,
    SessionKeys.ESTIMATE,
    SessionKeys.SALES_RECEIPT,
    SessionKeys.BILL,
)


@dataclass(frozen=True)
class AuthContext:
    """The access token and company a request acts on."""

    access_token: str
    realm_id: str

    def __post_init__(self):
        if not self.access_token or not self.access_token.strip():
            raise ValidationError("Access token is required")
        if not self.realm_id or not self.realm_id.strip():
            raise ValidationError("Realm ID is required")

    @property
    def raw_token(self) -> str:
        """Token without the Bearer prefix."""
        if self.access_token.startswith(BEARER_PREFIX):
            return self.access_token[len(BEARER_PREFIX):]
        return self.access_token

    @property
    def bearer_value(self) -> str:
        """Full Authorization header value."""
        return BEARER_PREFIX + self.raw_token


class CallbackStatus(str, Enum):
    """Progress of an authorization code through the callback."""

    UNPROCESSED = "unprocessed"
    PROCESSING = "processing"
    PROCESSED = "processed"


class InMemorySessionBackend:
    """
    Session values keyed by session id, dropped after max_age idle seconds.

    One instance is shared by the process; each session's dict is only
    touched by requests carrying that session's cookie.
    """

    def __init__(self, max_age: int = 3600):
        self._max_age = max_age
        self._data: dict[str, dict[str, Any]] = {}
        self._touched: dict[str, float] = {}

    def load(self, sid: str) -> dict[str, Any]:
        """Return the (possibly new) value dict for sid."""
        self.purge_expired()
        self._touched[sid] = time.monotonic()
        return self._data.setdefault(sid, {})

    def delete(self, sid: str) -> None:
        self._data.pop(sid, None)
        self._touched.pop(sid, None)

    def purge_expired(self) -> int:
        """Drop idle sessions; returns how many were removed."""
        cutoff = time.monotonic() - self._max_age
        expired = [sid for sid, ts in self._touched.items() if ts < cutoff]
        for sid in expired:
            self.delete(sid)
        if expired:
            logger.debug(f"Purged {len(expired)} idle sessions")
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)


class SessionStore:
    """get / set / remove / invalidate over the current browser session."""

    def __init__(self, request: Request):
        self._request = request
        self._backend: InMemorySessionBackend = request.app.state.session_backend

    @property
    def _values(self) -> dict[str, Any]:
        cookie = self._request.session
        sid = cookie.get(SessionKeys.SID)
        if not sid:
            sid = secrets.token_urlsafe(32)
            cookie[SessionKeys.SID] = sid
        return self._backend.load(sid)

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def remove(self, *keys: str) -> None:
        values = self._values
        for key in keys:
            values.pop(key, None)

    def invalidate(self) -> None:
        """Forget every value and issue a new session id on next use."""
        sid = self._request.session.get(SessionKeys.SID)
        if sid:
            self._backend.delete(sid)
        self._request.session.clear()

    # ── Flash messages ──────────────────────────────────────────

    def flash(self, category: str, message: str) -> None:
        """Queue a message for the next page render."""
        flashes = self._values.setdefault(SessionKeys.FLASHES, [])
        flashes.append({"category": category, "message": message})

    def pop_flashes(self) -> list[dict[str, str]]:
        return self._values.pop(SessionKeys.FLASHES, [])

    # ── Auth helpers ────────────────────────────────────────────

    @property
    def is_authenticated(self) -> bool:
        access_token = self.get(SessionKeys.ACCESS_TOKEN)
        realm_id = self.get(SessionKeys.REALM_ID)
        return bool(access_token and access_token.strip() and realm_id and realm_id.strip())

    def auth_context(self) -> Optional[AuthContext]:
        """AuthContext for the connected company, or None."""
        if not self.is_authenticated:
            return None
        return AuthContext(
            access_token=self.get(SessionKeys.ACCESS_TOKEN),
            realm_id=self.get(SessionKeys.REALM_ID),
        )

    def clear_company_data(self) -> None:
        self.remove(*COMPANY_DATA_KEYS)

    # ── Callback idempotency marker ─────────────────────────────

    def callback_status(self, code: str) -> CallbackStatus:
        marker = self.get(SessionKeys.CALLBACK_MARKER)
        if not marker or marker.get("code") != code:
            return CallbackStatus.UNPROCESSED
        return CallbackStatus(marker["status"])

    def mark_callback(self, code: str, status: CallbackStatus) -> None:
        if status == CallbackStatus.UNPROCESSED:
            self.remove(SessionKeys.CALLBACK_MARKER)
            return
        self.set(SessionKeys.CALLBACK_MARKER, {"code": code, "status": status.value})
