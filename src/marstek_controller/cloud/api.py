"""Marstek cloud session: login, token lifecycle and cached status reads.

The cloud is an alternate data path for batteries that are not reachable
over the local API. One ``CloudSession`` exists per account. Logins and
status reads are single-flight, so any number of devices sharing an account
cause one HTTP call per cache period.
"""

from __future__ import annotations

import datetime
import hashlib
import json
import time
from collections.abc import Callable
from typing import Any, cast

import aiohttp
from pydantic import ValidationError as PydanticValidationError

from marstek_controller.cloud.models import CloudDevice, CloudDeviceStatus, CloudToken
from marstek_controller.cloud.single_flight import SingleFlight
from marstek_controller.const import (
    MARSTEK_CLOUD_API_TIMEOUT,
    MARSTEK_CLOUD_BASE_URL,
    MARSTEK_CLOUD_CACHE_TTL,
    MARSTEK_CLOUD_LOGIN_PATH,
    MARSTEK_CLOUD_STATUS_PATH,
    MARSTEK_CLOUD_TOKEN_LIFETIME,
    MARSTEK_CLOUD_TOKEN_MARGIN,
)
from marstek_controller.correlation import operation_context
from marstek_controller.exceptions import CloudAuthError, CloudError
from marstek_controller.instrumentation import timed_async
from marstek_controller.logging_abstraction import get_logger
from marstek_controller.metrics import record_cloud_cache_hit, record_cloud_request

__all__ = [
    "TOKEN_REJECTED_CODE",
    "CloudSession",
    "CloudSessionRegistry",
    "hash_password",
]

logger = get_logger(__name__)

# response code the status endpoint uses for an unknown or expired token
TOKEN_REJECTED_CODE = "8"


def hash_password(password: str) -> str:
    """MD5 hex digest, the form the login endpoint expects."""
    return hashlib.md5(password.encode("utf-8")).hexdigest()  # noqa: S324


def _upstream_message(body: object) -> str | None:
    if isinstance(body, dict):
        body_map = cast("dict[str, Any]", body)
        for key in ("msg", "message", "error"):
            value = body_map.get(key)
            if value:
                return str(value)
    return None


def _is_token_rejection(body: dict[str, Any]) -> bool:
    return str(body.get("code")) == TOKEN_REJECTED_CODE


class CloudSession:
    """Authenticated session against the Marstek cloud.

    Args:
        username: Account e-mail
        password_md5: MD5 hex digest of the account password
        base_url: API origin
        api_timeout: Total seconds per HTTP call
        cache_ttl: Seconds a status snapshot is served without a new call
        token_lifetime: Assumed token lifetime when login reports none
        token_margin: Seconds before expiry a token is treated as expired
        clock: Monotonic clock for cache ageing

    """

    lp: str = "cloud:"

    def __init__(
        self,
        username: str,
        password_md5: str,
        *,
        base_url: str = MARSTEK_CLOUD_BASE_URL,
        api_timeout: float = MARSTEK_CLOUD_API_TIMEOUT,
        cache_ttl: float = MARSTEK_CLOUD_CACHE_TTL,
        token_lifetime: float = MARSTEK_CLOUD_TOKEN_LIFETIME,
        token_margin: float = MARSTEK_CLOUD_TOKEN_MARGIN,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not username or not password_md5:
            msg = "username and password hash are required"
            raise CloudAuthError(msg)
        self.username = username
        self.password_md5 = password_md5
        self.base_url = base_url.rstrip("/")
        self.api_timeout = api_timeout
        self.cache_ttl = cache_ttl
        self.token_lifetime = token_lifetime
        self.token_margin = token_margin
        self._clock = clock
        self.http_session: aiohttp.ClientSession | None = None
        self._token: CloudToken | None = None
        self._devices: list[CloudDevice] = []
        self._snapshot: dict[str, CloudDeviceStatus] | None = None
        self._snapshot_at: float | None = None
        self._login_flight: SingleFlight[CloudToken] = SingleFlight("login")
        self._status_flight: SingleFlight[dict[str, CloudDeviceStatus]] = SingleFlight("status")

    @property
    def token(self) -> CloudToken | None:
        return self._token

    @property
    def token_valid(self) -> bool:
        return self._token is not None and self._token.is_valid(self.token_margin)

    def set_password(self, password_md5: str) -> None:
        """Replace the password hash; the next call logs in again."""
        if password_md5 != self.password_md5:
            self.password_md5 = password_md5
            self._token = None

    async def close(self) -> None:
        if self.http_session and not self.http_session.closed:
            logger.debug("%s closing aiohttp ClientSession", self.lp)
            await self.http_session.close()
        self.http_session = None

    async def _check_session(self) -> aiohttp.ClientSession:
        if not self.http_session or self.http_session.closed:
            logger.debug("%s creating aiohttp ClientSession", self.lp)
            self.http_session = aiohttp.ClientSession(headers={"Accept": "application/json"})
        return self.http_session

    async def _request(self, method: str, path: str, endpoint: str, params: dict[str, str]) -> dict[str, Any]:
        """Perform one HTTP call and return the decoded JSON object.

        Raises:
            CloudAuthError: HTTP 401
            CloudError: Connection failure, other non-2xx status, or a body
                that is not a JSON object

        """
        lp = f"{self.lp}{endpoint}:"
        session = await self._check_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(
                method,
                url,
                params=params,
                timeout=aiohttp.ClientTimeout(total=self.api_timeout),
            ) as response:
                status = response.status
                text = await response.text()
        except (aiohttp.ClientError, TimeoutError) as e:
            record_cloud_request(endpoint, "connection_error")
            logger.warning("%s ✗ %s %s failed: %s", lp, method, path, e)
            msg = f"{endpoint} request failed: {e}"
            raise CloudError(msg) from e

        body: object = None
        if text:
            try:
                body = json.loads(text)
            except json.JSONDecodeError:
                body = None

        if status >= 400:
            record_cloud_request(endpoint, f"http_{status}")
            detail = _upstream_message(body) or f"HTTP {status}"
            logger.warning("%s ✗ HTTP %s: %s", lp, status, detail)
            error_cls = CloudAuthError if status == 401 else CloudError
            raise error_cls(f"{endpoint} failed: {detail}", status=status)
        if not isinstance(body, dict):
            record_cloud_request(endpoint, "malformed")
            msg = f"{endpoint} returned a malformed body"
            raise CloudError(msg, status=status)
        record_cloud_request(endpoint, "ok")
        return cast("dict[str, Any]", body)

    async def login(self) -> CloudToken:
        """Obtain a fresh token. Concurrent callers share one login call.

        Raises:
            CloudAuthError: The response carried no token
            CloudError: The HTTP call failed

        """
        return await self._login_flight.run(self._do_login)

    async def _do_login(self) -> CloudToken:
        lp = f"{self.lp}login:"
        self._token = None
        logger.debug("%s → requesting token for %s", lp, self.username)
        body = await self._request(
            "POST",
            MARSTEK_CLOUD_LOGIN_PATH,
            "login",
            params={"pwd": self.password_md5, "mailbox": self.username},
        )
        raw_token = body.get("token") or body.get("access_token")
        if not raw_token:
            detail = _upstream_message(body) or "login did not return a token"
            logger.error("%s ✗ %s", lp, detail)
            raise CloudAuthError(detail, code=str(body.get("code")) if body.get("code") is not None else None)

        expire_in = body.get("expires_in") or body.get("expire_in")
        try:
            lifetime = float(expire_in) if expire_in else self.token_lifetime
        except (TypeError, ValueError):
            lifetime = self.token_lifetime
        refresh = body.get("refresh_token")
        self._token = CloudToken(
            access_token=str(raw_token),
            refresh_token=str(refresh) if refresh else None,
            expire_in=lifetime,
            issued_at=datetime.datetime.now(datetime.UTC),
        )

        data = body.get("data")
        if isinstance(data, list):
            devices: list[CloudDevice] = []
            for record in cast("list[object]", data):
                if not isinstance(record, dict):
                    continue
                try:
                    devices.append(CloudDevice.model_validate(record))
                except PydanticValidationError as e:
                    logger.warning("%s skipping unparsable device record: %s", lp, e)
            self._devices = devices
        else:
            logger.warning("%s login response listed no devices", lp)
            self._devices = []
        logger.info("%s ✓ token received", lp, extra={"devices": len(self._devices)})
        return self._token

    async def fetch_devices(self) -> list[CloudDevice]:
        """Devices bound to the account, logging in first when needed."""
        if not self.token_valid:
            _ = await self.login()
        return list(self._devices)

    def _cache_fresh(self) -> bool:
        if self._snapshot is None or self._snapshot_at is None:
            return False
        return (self._clock() - self._snapshot_at) < self.cache_ttl

    async def fetch_status(self) -> dict[str, CloudDeviceStatus]:
        """Latest telemetry per ``devid``.

        Served from cache while it is younger than ``cache_ttl``. Otherwise
        one status call is made (shared by concurrent callers), with one
        re-login and one retry when the token is rejected.

        Raises:
            CloudAuthError: Login failed or the token was rejected twice
            CloudError: Any other HTTP or body failure

        """
        if not self._status_flight.in_flight and self._cache_fresh():
            record_cloud_cache_hit()
            assert self._snapshot is not None
            return dict(self._snapshot)
        return await self._status_flight.run(self._do_fetch_status)

    async def _status_call(self) -> dict[str, Any]:
        assert self._token is not None
        body = await self._request(
            "GET",
            MARSTEK_CLOUD_STATUS_PATH,
            "status",
            params={"token": self._token.access_token},
        )
        if _is_token_rejection(body):
            msg = _upstream_message(body) or "token rejected"
            raise CloudAuthError(msg, code=TOKEN_REJECTED_CODE)
        return body

    @timed_async("cloud_fetch_status")
    async def _do_fetch_status(self) -> dict[str, CloudDeviceStatus]:
        with operation_context("cloud"):
            lp = f"{self.lp}fetch_status:"
            if not self.token_valid:
                logger.debug("%s no valid token, logging in first", lp)
                _ = await self.login()
            try:
                body = await self._status_call()
            except CloudAuthError as e:
                logger.info("%s token rejected (%s), logging in again", lp, e)
                _ = await self.login()
                body = await self._status_call()

            data = body.get("data")
            if isinstance(data, dict):
                data = [data]
            if not isinstance(data, list):
                msg = _upstream_message(body) or "status response carried no device data"
                raise CloudError(msg, code=str(body.get("code")) if body.get("code") is not None else None)

            snapshot: dict[str, CloudDeviceStatus] = {}
            for record in cast("list[object]", data):
                if not isinstance(record, dict):
                    continue
                try:
                    status = CloudDeviceStatus.model_validate(record)
                except PydanticValidationError as e:
                    logger.warning("%s skipping unparsable status record: %s", lp, e)
                    continue
                snapshot[status.devid] = status
            self._snapshot = snapshot
            self._snapshot_at = self._clock()
            logger.debug("%s ✓ %d device record(s)", lp, len(snapshot))
            return dict(snapshot)


class CloudSessionRegistry:
    """One ``CloudSession`` per account username."""

    def __init__(self, factory: Callable[[str, str], CloudSession] = CloudSession) -> None:
        self._factory = factory
        self._sessions: dict[str, CloudSession] = {}

    def get(self, username: str, password_md5: str) -> CloudSession:
        session = self._sessions.get(username)
        if session is None:
            session = self._sessions[username] = self._factory(username, password_md5)
        else:
            session.set_password(password_md5)
        return session

    def __len__(self) -> int:
        return len(self._sessions)

    async def close_all(self) -> None:
        for session in self._sessions.values():
            await session.close()
        self._sessions.clear()
