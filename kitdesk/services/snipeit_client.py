"""
Snipe-IT API Client

Thin synchronous wrapper around the Snipe-IT REST API (the custody system of record):
- Bearer token authentication
- Short-lived in-memory cache for GET requests
- Single attempt per call, no automatic retries (callers degrade or reconcile later)
- Structured error mapping to ExternalSystemError
- Request logging with request_id

Snipe-IT API Documentation: https://snipe-it.readme.io/reference
"""

import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import httpx

from ..config import settings
from ..exceptions import ExternalSystemError

logger = logging.getLogger(__name__)


@dataclass
class SnipeITError:
    """Structured error from Snipe-IT API"""
    code: str
    message: str
    status_code: int


# Error mapping for Snipe-IT responses
ERROR_MAP = {
    401: SnipeITError("unauthorized", "Invalid or missing API token", 401),
    403: SnipeITError("forbidden", "API token lacks permission for this resource", 403),
    404: SnipeITError("not_found", "Resource not found", 404),
    422: SnipeITError("validation_error", "Invalid request data", 422),
    429: SnipeITError("rate_limited", "Too many requests", 429),
    500: SnipeITError("server_error", "Snipe-IT server error", 500),
    502: SnipeITError("bad_gateway", "Snipe-IT gateway error", 502),
    503: SnipeITError("service_unavailable", "Snipe-IT service unavailable", 503),
}

PAGE_SIZE = 200

# Custom field name fragments that carry per-model authorization requirements
CERTIFICATION_FIELD = "certification needed"
ACCESS_LEVEL_FIELD = "access level"


@dataclass
class CustodyAsset:
    """One asset currently assigned to a user in Snipe-IT"""
    asset_id: int
    asset_tag: str
    asset_name: str = ""
    model_id: Optional[int] = None
    model_name: str = ""
    assigned_to_id: Optional[int] = None
    assigned_to_name: str = ""
    assigned_to_email: str = ""
    assigned_to_username: str = ""
    status_label: str = ""
    last_checkout: Optional[datetime] = None     # naive UTC
    expected_checkin: Optional[datetime] = None  # naive UTC


@dataclass
class AuthRequirements:
    certifications: List[str] = field(default_factory=list)
    access_levels: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.certifications and not self.access_levels


def _flatten_messages(value: Any) -> List[str]:
    """Snipe-IT returns messages as a string, list or nested dict of lists"""
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, dict):
        out = []
        for v in value.values():
            out.extend(_flatten_messages(v))
        return out
    if isinstance(value, list):
        out = []
        for v in value:
            out.extend(_flatten_messages(v))
        return out
    return []


class SnipeITClient:
    """
    Snipe-IT API client.

    All datetimes in and out of this class are naive UTC; conversion to the
    Snipe-IT server's wall-clock timezone happens at the wire boundary.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        request_id: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        cache_ttl: Optional[int] = None
    ):
        self.base_url = (base_url or settings.snipeit_base_url).rstrip("/")
        self.api_token = api_token if api_token is not None else settings.snipeit_api_token
        self.request_id = request_id or str(uuid.uuid4())[:8]
        self.transport = transport
        self.timeout = settings.snipeit_timeout_seconds
        self.verify_ssl = settings.snipeit_verify_ssl
        self.cache_ttl = settings.api_cache_ttl_seconds if cache_ttl is None else cache_ttl
        self.snipe_tz = ZoneInfo(settings.snipeit_timezone or settings.timezone)
        self.expected_checkin_field = settings.snipeit_expected_checkin_field or None
        self._cache: Dict[str, tuple] = {}

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_token}",
            "User-Agent": "kitdesk/1.0",
        }

    def _map_error(self, status_code: int, response_data: Optional[Dict]) -> SnipeITError:
        """Map HTTP status code to structured error"""
        if status_code in ERROR_MAP:
            error = ERROR_MAP[status_code]
            if response_data:
                msgs = _flatten_messages(response_data.get("messages") or response_data.get("message"))
                if msgs:
                    return SnipeITError(error.code, "; ".join(msgs), status_code)
            return error

        if status_code >= 500:
            return SnipeITError("server_error", f"Server error: {status_code}", status_code)

        return SnipeITError("unknown", f"Unknown error: {status_code}", status_code)

    def _cache_key(self, url: str, params: Optional[Dict]) -> str:
        raw = url + "|" + json.dumps(params or {}, sort_keys=True)
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()

    def clear_cache(self):
        self._cache.clear()

    def _prune_cache(self):
        now = time.monotonic()
        for key, (expires, _) in list(self._cache.items()):
            if expires <= now:
                self._cache.pop(key, None)

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        payload: Optional[Dict] = None,
        use_cache: bool = True
    ) -> Dict:
        """
        Make a single HTTP request to Snipe-IT.

        Raises:
            ExternalSystemError on transport failure, HTTP >= 400 or a non-JSON body
        """
        if not self.base_url or not self.api_token:
            raise ExternalSystemError("Snipe-IT API is not configured (missing base URL or API token)")

        method = method.upper()
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        cache_key = None
        if method == "GET" and use_cache and self.cache_ttl > 0:
            cache_key = self._cache_key(url, params)
            cached = self._cache.get(cache_key)
            if cached:
                if cached[0] > time.monotonic():
                    return cached[1]
                self._cache.pop(cache_key, None)

        start_time = time.time()
        try:
            response = self._httpx_request(method, url, params, payload)
        except httpx.HTTPError as e:
            logger.error(f"[{self.request_id}] {method} {endpoint} failed: {e}")
            raise ExternalSystemError(f"Error talking to Snipe-IT API: {e}") from e

        duration_ms = int((time.time() - start_time) * 1000)
        status_code = response.status_code

        try:
            data = response.json()
        except ValueError:
            data = None

        if status_code >= 400:
            error = self._map_error(status_code, data if isinstance(data, dict) else None)
            logger.warning(f"[{self.request_id}] {method} {endpoint} -> {status_code} ({error.code}) in {duration_ms}ms")
            raise ExternalSystemError(
                f"Snipe-IT API returned HTTP {status_code}: {error.message}",
                http_status=status_code,
                error_code=error.code
            )

        if not isinstance(data, dict):
            raise ExternalSystemError("Invalid JSON from Snipe-IT API", http_status=status_code)

        logger.debug(f"[{self.request_id}] {method} {endpoint} -> {status_code} in {duration_ms}ms")

        if cache_key is not None:
            self._prune_cache()
            self._cache[cache_key] = (time.monotonic() + self.cache_ttl, data)

        return data

    def _httpx_request(self, method, url, params, payload):
        """Make request using httpx"""
        with httpx.Client(timeout=self.timeout, verify=self.verify_ssl, transport=self.transport) as client:
            if method == "GET":
                return client.get(url, headers=self._get_headers(), params=params)
            return client.request(method, url, headers=self._get_headers(), params=params, json=payload)

    def _check_write_status(self, data: Dict, action: str):
        """Snipe-IT answers 200 with status=error for business-rule failures"""
        status = data.get("status", "success")
        messages = data.get("messages", data.get("message", ""))
        has_explicit_error = isinstance(messages, dict) and "error" in messages
        if status != "success" or has_explicit_error:
            text = "; ".join(_flatten_messages(messages)) or "Unknown API response"
            raise ExternalSystemError(f"Snipe-IT {action} did not succeed: {text}", error_code="rejected")

    # ==================
    # Datetime conversion
    # ==================

    def parse_datetime(self, value: Any, date_only_end_of_day: bool = False) -> Optional[datetime]:
        """
        Parse a Snipe-IT date value ("Y-m-d H:i:s", "Y-m-d" or {"datetime"/"date": ...})
        in the Snipe-IT timezone and return naive UTC.
        """
        if isinstance(value, dict):
            value = value.get("datetime") or value.get("date")
        if not value or not isinstance(value, str):
            return None
        value = value.strip()

        parsed = None
        is_date_only = False
        for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d"):
            try:
                parsed = datetime.strptime(value, fmt)
                is_date_only = fmt == "%Y-%m-%d"
                break
            except ValueError:
                continue
        if parsed is None:
            try:
                parsed = datetime.fromisoformat(value)
            except ValueError:
                logger.warning(f"[{self.request_id}] Unparseable Snipe-IT datetime: {value!r}")
                return None

        # A bare date is due at the end of that day, not at midnight
        if is_date_only and date_only_end_of_day:
            parsed = parsed.replace(hour=23, minute=59, second=59)

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=self.snipe_tz)
        return parsed.astimezone(timezone.utc).replace(tzinfo=None)

    def format_datetime(self, value: datetime) -> str:
        """naive UTC -> Snipe-IT wall-clock string"""
        aware = value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value
        return aware.astimezone(self.snipe_tz).strftime("%Y-%m-%d %H:%M:%S")

    # ==================
    # Models / assets
    # ==================

    def get_model(self, model_id: int) -> Dict:
        return self._request("GET", f"models/{int(model_id)}")

    def list_assets_by_model(self, model_id: int, max_results: int = 500) -> List[Dict]:
        rows: List[Dict] = []
        offset = 0
        while len(rows) < max_results:
            data = self._request("GET", "hardware", params={
                "model_id": int(model_id),
                "limit": PAGE_SIZE,
                "offset": offset,
            })
            chunk = data.get("rows") or []
            rows.extend(chunk)
            if len(chunk) < PAGE_SIZE:
                break
            offset += PAGE_SIZE
        return rows[:max_results]

    def count_requestable_assets_by_model(self, model_id: int) -> int:
        """Total units of a model that may be booked (requestable assets)"""
        if model_id <= 0:
            raise ValueError("Model ID must be positive")
        return sum(1 for a in self.list_assets_by_model(model_id) if a.get("requestable"))

    def get_model_auth_requirements(self, model_id: int) -> AuthRequirements:
        """
        Collect certification / access-level requirements declared on the
        custom fields of a model's requestable assets.
        """
        certs: Dict[str, bool] = {}
        levels: Dict[str, bool] = {}
        for asset in self.list_assets_by_model(model_id):
            if not asset.get("requestable"):
                continue
            custom_fields = asset.get("custom_fields") or {}
            if not isinstance(custom_fields, dict):
                continue
            for field_name, cf in custom_fields.items():
                if not isinstance(cf, dict):
                    continue
                value = str(cf.get("value") or "").strip()
                if not value:
                    continue
                name = str(field_name).lower()
                if ACCESS_LEVEL_FIELD in name:
                    levels[value] = True
                elif CERTIFICATION_FIELD in name:
                    certs[value] = True
        return AuthRequirements(certifications=list(certs), access_levels=list(levels))

    def list_checked_out_assets(self) -> List[CustodyAsset]:
        """
        Page through every asset and keep the requestable ones currently assigned.

        Not cached: sync must always see a fresh snapshot.
        """
        raw_rows: List[Dict] = []
        offset = 0
        while True:
            data = self._request("GET", "hardware", params={"limit": PAGE_SIZE, "offset": offset}, use_cache=False)
            rows = data.get("rows") or []
            if not rows:
                break
            raw_rows.extend(rows)
            if len(rows) < PAGE_SIZE:
                break
            offset += PAGE_SIZE

        assets = []
        for row in raw_rows:
            if not row.get("requestable"):
                continue
            assigned = row.get("assigned_to")
            if not assigned:
                continue
            asset = self._to_custody_asset(row, assigned)
            if asset is not None:
                assets.append(asset)

        logger.info(f"[{self.request_id}] Snipe-IT reports {len(assets)} checked-out requestable assets ({len(raw_rows)} scanned)")
        return assets

    def _to_custody_asset(self, row: Dict, assigned: Any) -> Optional[CustodyAsset]:
        try:
            asset_id = int(row.get("id") or 0)
        except (TypeError, ValueError):
            return None
        if asset_id <= 0:
            return None

        model = row.get("model") or {}
        status_label = row.get("status_label") or ""
        if isinstance(status_label, dict):
            status_label = status_label.get("name") or status_label.get("status_meta") or ""

        asset = CustodyAsset(
            asset_id=asset_id,
            asset_tag=str(row.get("asset_tag") or ""),
            asset_name=str(row.get("name") or ""),
            model_id=int(model["id"]) if model.get("id") else None,
            model_name=str(model.get("name") or ""),
            status_label=str(status_label),
            last_checkout=self.parse_datetime(row.get("last_checkout")),
            expected_checkin=self.parse_datetime(row.get("expected_checkin"), date_only_end_of_day=True),
        )

        if isinstance(assigned, dict):
            asset.assigned_to_id = int(assigned["id"]) if assigned.get("id") else None
            asset.assigned_to_name = str(assigned.get("name") or assigned.get("username") or "")
            asset.assigned_to_email = str(assigned.get("email") or "")
            asset.assigned_to_username = str(assigned.get("username") or "")
        else:
            asset.assigned_to_name = str(assigned)

        # Prefer the custom datetime field over the native date-only expected_checkin
        if self.expected_checkin_field:
            for cf in (row.get("custom_fields") or {}).values():
                if isinstance(cf, dict) and cf.get("field") == self.expected_checkin_field:
                    custom_value = self.parse_datetime(str(cf.get("value") or ""))
                    if custom_value is not None:
                        asset.expected_checkin = custom_value
                    break

        return asset

    # ==================
    # Users
    # ==================

    def get_user(self, user_id: int) -> Dict:
        return self._request("GET", f"users/{int(user_id)}")

    def get_user_groups(self, user_id: int) -> List[Dict]:
        """Return [{"id": int, "name": str}, ...] for a Snipe-IT user"""
        data = self.get_user(user_id)
        rows = (data.get("groups") or {}).get("rows") or []
        return [
            {"id": int(g["id"]), "name": str(g.get("name") or "")}
            for g in rows
            if isinstance(g, dict) and g.get("id")
        ]

    def find_user_by_email(self, email: str) -> Optional[Dict]:
        data = self._request("GET", "users", params={"search": email, "limit": 50})
        wanted = email.strip().lower()
        for row in data.get("rows") or []:
            if str(row.get("email") or "").strip().lower() == wanted:
                return row
        return None

    # ==================
    # Writes
    # ==================

    def checkout_asset(self, asset_id: int, user_id: int, expected_checkin: Optional[datetime] = None, note: str = ""):
        """Assign an asset to a user with an expected return instant (naive UTC)"""
        if asset_id <= 0 or user_id <= 0:
            raise ValueError("asset_id and user_id must be positive")

        payload: Dict[str, Any] = {
            "checkout_to_type": "user",
            "assigned_user": user_id,
        }
        if note:
            payload["note"] = note
        if expected_checkin is not None:
            payload["expected_checkin"] = self.format_datetime(expected_checkin)

        data = self._request("POST", f"hardware/{asset_id}/checkout", payload=payload)
        self._check_write_status(data, "checkout")
        logger.info(f"[{self.request_id}] Asset {asset_id} checked out to user {user_id}")

        # The checkout endpoint ignores custom fields
        if expected_checkin is not None and self.expected_checkin_field:
            self._request("PUT", f"hardware/{asset_id}", payload={
                self.expected_checkin_field: self.format_datetime(expected_checkin)
            })

    def checkin_asset(self, asset_id: int, note: str = ""):
        payload = {"note": note} if note else {}
        data = self._request("POST", f"hardware/{asset_id}/checkin", payload=payload)
        self._check_write_status(data, "checkin")
        logger.info(f"[{self.request_id}] Asset {asset_id} checked in")

        if self.expected_checkin_field:
            self._request("PUT", f"hardware/{asset_id}", payload={self.expected_checkin_field: ""})

    def update_expected_checkin(self, asset_id: int, expected_checkin: datetime):
        formatted = self.format_datetime(expected_checkin)
        payload = {"expected_checkin": formatted}
        if self.expected_checkin_field:
            payload[self.expected_checkin_field] = formatted
        data = self._request("PUT", f"hardware/{asset_id}", payload=payload)
        self._check_write_status(data, "expected checkin update")

    def add_asset_note(self, asset_id: int, note: str):
        data = self._request("POST", f"notes/{asset_id}/store", payload={"note": note})
        self._check_write_status(data, "note")

    def update_asset_status(self, asset_id: int, status_id: int):
        data = self._request("PUT", f"hardware/{asset_id}", payload={"status_id": status_id})
        self._check_write_status(data, "status update")

    def ping(self) -> bool:
        """Cheap reachability probe for health checks"""
        self._request("GET", "statuslabels", params={"limit": 1}, use_cache=False)
        return True


# Global client instance
_client: Optional[SnipeITClient] = None


def get_snipeit_client() -> SnipeITClient:
    """Get the process-wide Snipe-IT client (shares its GET cache)"""
    global _client
    if _client is None:
        _client = SnipeITClient()
    return _client
