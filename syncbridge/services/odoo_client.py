"""Odoo JSON-RPC client."""

import logging
import uuid
from typing import List, Dict, Optional, Any
import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from syncbridge.config import settings

logger = logging.getLogger(__name__)

RPC_ATTEMPTS = 3
RPC_MAX_WAIT = 10


def max_call_seconds(timeout: float) -> float:
    """Upper bound of one ``_rpc`` call including its retries."""
    return RPC_ATTEMPTS * timeout + (RPC_ATTEMPTS - 1) * RPC_MAX_WAIT


class OdooError(RuntimeError):
    """Base error for failed Odoo calls.

    ``code`` carries the HTTP status when the failure came from the transport.
    """

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class OdooServerError(OdooError):
    """Odoo answered with HTTP 429 or 5xx."""


class OdooRPCError(OdooError):
    """Odoo answered with a JSON-RPC error payload."""


class OdooAuthError(OdooError):
    """Authentication failed or credentials are missing."""


class OdooClient:
    """Client for the Odoo external JSON-RPC API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        database: Optional[str] = None,
        username: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        """Initialize Odoo client.

        Args:
            base_url: Odoo base URL (defaults to settings.odoo_url).
            database: Odoo database name (defaults to settings.odoo_database).
            username: Login used for authentication (defaults to settings.odoo_username).
            api_key: API key or password (defaults to the configured key, decrypted if needed).
            timeout: Per-request timeout in seconds (defaults to settings.odoo_timeout).
        """
        self.base_url = (base_url or settings.odoo_url).rstrip('/')
        self.database = database or settings.odoo_database
        self.username = username or settings.odoo_username
        self.api_key = api_key or self._configured_api_key()
        self.timeout = timeout or settings.odoo_timeout
        self.uid: Optional[int] = None
        self.server_version: Optional[str] = None

        if not self.api_key:
            logger.warning("Odoo API key not configured")

        self._client: Optional[httpx.AsyncClient] = None

    @staticmethod
    def _configured_api_key() -> Optional[str]:
        if settings.odoo_api_key_encrypted:
            from syncbridge.services.encryption_service import EncryptionService
            return EncryptionService().decrypt(settings.odoo_api_key_encrypted)
        return settings.odoo_api_key

    async def __aenter__(self):
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client.

        Raises:
            RuntimeError: If client is not initialized (use async context manager).
        """
        if self._client is None:
            raise RuntimeError("OdooClient must be used as async context manager")
        return self._client

    @retry(
        stop=stop_after_attempt(RPC_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=RPC_MAX_WAIT),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True
    )
    async def _rpc(self, service: str, method: str, args: List[Any]) -> Any:
        """Send one JSON-RPC call with retry on timeouts and network errors.

        Args:
            service: Odoo service name (common, object).
            method: Service method.
            args: Positional arguments.

        Returns:
            The ``result`` member of the response.

        Raises:
            OdooServerError: On HTTP 429 or 5xx.
            OdooRPCError: If Odoo returns an error payload.
            httpx.HTTPError: If the transport fails after retries.
        """
        client = self._get_client()
        payload = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {"service": service, "method": method, "args": args},
            "id": uuid.uuid4().hex[:16],
        }

        try:
            response = await client.request(method="POST", url="/jsonrpc", json=payload)
        except httpx.TimeoutException:
            logger.error(f"Timeout for {service}.{method}")
            raise
        except httpx.NetworkError as e:
            logger.error(f"Network error for {service}.{method}: {e}")
            raise

        status_code = response.status_code
        if status_code == 429 or status_code >= 500:
            logger.error(f"Server error HTTP {status_code} for {service}.{method}")
            raise OdooServerError(f"Server error HTTP {status_code} on /jsonrpc", code=status_code)
        if status_code >= 400:
            raise OdooError(f"HTTP {status_code} on /jsonrpc", code=status_code)

        try:
            data = response.json()
        except ValueError:
            raise OdooError(f"Invalid JSON response from Odoo (HTTP {status_code})", code=status_code)

        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            error_data = error.get("data") or {}
            message = error_data.get("message") or error.get("message") or "Unknown RPC error"
            error_name = error_data.get("name", "")
            if error_name:
                message = f"{error_name}: {message}"
            context = {"service": service, "method": method}
            if service == "object" and len(args) > 4:
                context["model"] = args[3]
                context["model_method"] = args[4]
            logger.error(f"Odoo RPC error: {message} {context}")
            raise OdooRPCError(f"Odoo RPC error: {message}")

        return data.get("result") if isinstance(data, dict) else data

    async def authenticate(self) -> int:
        """Authenticate and remember the user id.

        Returns:
            The Odoo user id.

        Raises:
            OdooAuthError: If credentials are missing or rejected.
        """
        if not self.api_key:
            raise OdooAuthError("Odoo API key is not configured")

        uid = await self._rpc("common", "authenticate", [self.database, self.username, self.api_key, {}])
        if not uid:
            raise OdooAuthError("Authentication failed: invalid credentials")

        self.uid = int(uid)
        try:
            version = await self._rpc("common", "version", [])
            self.server_version = (version or {}).get("server_version")
        except OdooError:
            self.server_version = None

        logger.debug(f"Authenticated against {self.base_url} as uid {self.uid} (server {self.server_version})")
        return self.uid

    async def execute_kw(
        self,
        model: str,
        method: str,
        args: Optional[List[Any]] = None,
        kwargs: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Call a model method through ``object.execute_kw``.

        Authenticates lazily on first use.
        """
        if self.uid is None:
            await self.authenticate()
        return await self._rpc(
            "object",
            "execute_kw",
            [self.database, self.uid, self.api_key, model, method, args or [], kwargs or {}]
        )

    async def health_check(self) -> bool:
        """Check if Odoo is reachable and accepts our credentials.

        Returns:
            True if healthy, False otherwise.
        """
        try:
            await self.authenticate()
            return True
        except Exception as e:
            logger.error(f"Odoo health check failed: {e}")
            return False

    async def search(self, model: str, domain: List[Any], limit: Optional[int] = None) -> List[int]:
        """Return ids of records matching a domain."""
        kwargs = {"limit": limit} if limit else {}
        return await self.execute_kw(model, "search", [domain], kwargs)

    async def read(self, model: str, ids: List[int], fields: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Read records by id."""
        kwargs = {"fields": fields} if fields else {}
        return await self.execute_kw(model, "read", [ids], kwargs)

    async def create(self, model: str, values: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> int:
        """Create a record and return its id."""
        kwargs = {"context": context} if context else {}
        result = await self.execute_kw(model, "create", [values], kwargs)
        # Odoo 17+ returns a list of ids for create
        if isinstance(result, list):
            result = result[0] if result else 0
        return int(result)

    async def write(
        self,
        model: str,
        ids: List[int],
        values: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Update records."""
        kwargs = {"context": context} if context else {}
        return bool(await self.execute_kw(model, "write", [ids, values], kwargs))

    async def unlink(self, model: str, ids: List[int]) -> bool:
        """Delete records."""
        return bool(await self.execute_kw(model, "unlink", [ids]))

    async def model_exists(self, model: str) -> bool:
        """Check whether a model is installed on the Odoo instance."""
        count = await self.execute_kw("ir.model", "search_count", [[["model", "=", model]]])
        return bool(count)
