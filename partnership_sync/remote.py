import asyncio
import logging
from datetime import datetime
from typing import Any, Optional, Protocol
from urllib.parse import quote

import requests

from partnership_sync.config import Settings, get_settings
from partnership_sync.errors import RemoteServiceError
from partnership_sync.schemas import Meeting, Message, ensure_utc
from partnership_sync.utils import (
    extract_collection,
    extract_record,
    normalize_record,
    normalize_records,
)

logger = logging.getLogger(__name__)


class PartnershipService(Protocol):
    """
    Operations consumed from the Remote Partnership Service.

    Implementations raise RemoteServiceError on any failure. Write calls may
    return None when the service acknowledges without echoing the record.
    """

    async def list_messages(self, partnership_id: str, limit: int) -> list[Message]:
        ...

    async def send_message(self, partnership_id: str, text: str) -> Optional[Message]:
        ...

    async def list_meetings(self, partnership_id: str) -> list[Meeting]:
        ...

    async def create_meeting(self, partnership_id: str, scheduled_time: datetime) -> Optional[Meeting]:
        ...

    async def accept_meeting(self, partnership_id: str, meeting_id: str) -> Optional[Meeting]:
        ...


# =============================================================================
# HTTP Implementation
# =============================================================================

class HttpPartnershipService:
    """
    REST client for the partnership endpoints.

    requests is blocking, so every call runs in a worker thread via
    asyncio.to_thread and the event loop keeps ticking countdowns meanwhile.
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "HttpPartnershipService":
        settings = settings or get_settings()
        return cls(
            base_url=settings.API_BASE_URL,
            token=settings.API_TOKEN,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Perform one blocking request and decode the JSON body.

        Raises:
            RemoteServiceError: on transport failure, non-2xx status or a body
                that is not JSON. For error statuses the message is the body's
                ``message`` field when present.
        """
        url = f"{self.base_url}{endpoint}"
        logger.debug(f"{method} {url} params={params}")

        try:
            response = requests.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning(f"{method} {endpoint} failed: {exc}")
            raise RemoteServiceError(None, f"Request to partnership service failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.ok:
            message = None
            if isinstance(data, dict):
                message = data.get("message")
            message = message or f"HTTP error! status: {response.status_code}"
            logger.warning(f"{method} {endpoint} returned {response.status_code}: {message}")
            raise RemoteServiceError(response.status_code, message)

        if data is None:
            raise RemoteServiceError(response.status_code, "Partnership service returned a non-JSON body")
        return data

    async def _call(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        return await asyncio.to_thread(self._request, method, endpoint, **kwargs)

    @staticmethod
    def _path(*parts: str) -> str:
        return "".join(f"/{quote(str(part), safe='')}" for part in parts)

    async def list_messages(self, partnership_id: str, limit: int) -> list[Message]:
        payload = await self._call(
            "GET",
            self._path("partnerships", partnership_id, "messages"),
            params={"limit": limit},
        )
        return normalize_records(extract_collection(payload, "messages"), Message)

    async def send_message(self, partnership_id: str, text: str) -> Optional[Message]:
        payload = await self._call(
            "POST",
            self._path("partnerships", partnership_id, "messages"),
            json={"message": text},
        )
        record = extract_record(payload, "message")
        return normalize_record(record, Message) if record else None

    async def list_meetings(self, partnership_id: str) -> list[Meeting]:
        payload = await self._call(
            "GET",
            self._path("partnerships", partnership_id, "meetings"),
        )
        return normalize_records(extract_collection(payload, "meetings"), Meeting)

    async def create_meeting(self, partnership_id: str, scheduled_time: datetime) -> Optional[Meeting]:
        iso_time = ensure_utc(scheduled_time).isoformat().replace("+00:00", "Z")
        payload = await self._call(
            "POST",
            self._path("partnerships", partnership_id, "meetings"),
            json={"scheduled_time": iso_time},
        )
        record = extract_record(payload, "meeting")
        return normalize_record(record, Meeting) if record else None

    async def accept_meeting(self, partnership_id: str, meeting_id: str) -> Optional[Meeting]:
        payload = await self._call(
            "POST",
            self._path("partnerships", partnership_id, "meetings", meeting_id, "accept"),
        )
        record = extract_record(payload, "meeting")
        return normalize_record(record, Meeting) if record else None
