"""
Keybase API Client — resolves usernames to NaCl encryption public keys.

Wraps ``GET {base_url}/user/lookup.json?usernames=a,b&fields=public_keys``.

Retry policy:
    Fixed delay between attempts, bounded by ``max_retries``. Only
    transient failures (network errors, timeouts, HTTP 5xx, HTTP 429)
    are retried; a definitive "user not found" fails immediately.
    The retry sleep waits on the caller's cancellation event.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Any
from collections.abc import Iterable

import requests
from tenacity import (
    Retrying,
    stop_after_attempt,
    wait_fixed,
    retry_if_exception,
)

from ..config import DEFAULT_API_ENDPOINT, validate_username
from ..crypto.keys import public_key_from_kid
from ..exceptions import (
    KeeperError,
    InvalidArgument,
    NotFound,
    DeadlineExceeded,
    Unavailable,
    InternalError,
)
from ..utils import check_cancelled, cancellable_sleep
from ..version import __version__

logger = logging.getLogger("keybase.api")

USER_AGENT = f"keybase-keeper/{__version__}"

# Keybase API status codes
_STATUS_USER_NOT_FOUND = 205
_STATUS_BAD_USERNAME = 207

KIND_NETWORK = "network"
KIND_TIMEOUT = "timeout"
KIND_RATE_LIMIT = "rate_limit"
KIND_NOT_FOUND = "not_found"
KIND_INVALID_INPUT = "invalid_input"
KIND_SERVER_ERROR = "server_error"
KIND_INVALID_RESPONSE = "invalid_response"


@dataclass(frozen=True)
class ResolvedKey:
    """Public key material returned by the resolver for one username."""

    username: str
    public_key: bytes
    key_id: str


class APIError(Exception):
    """Classified failure of a single lookup attempt."""

    def __init__(
        self,
        message: str,
        kind: str,
        status_code: int = 0,
        temporary: bool = False,
        retry_after: float = 0.0,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.temporary = temporary
        self.retry_after = retry_after

    def __str__(self) -> str:
        if self.status_code:
            return f"{self.kind} (HTTP {self.status_code}): {self.message}"
        return f"{self.kind}: {self.message}"


def _is_transient(err: BaseException) -> bool:
    return isinstance(err, APIError) and err.temporary


def _truncate(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _parse_retry_after(value: Optional[str]) -> float:
    if not value:
        return 0.0
    try:
        return max(float(value), 0.0)
    except ValueError:
        return 0.0


def classify_status(response: requests.Response) -> APIError:
    """Classify a non-200 HTTP response."""
    status = response.status_code
    body = _truncate(response.text or "")
    if status == 429:
        return APIError(
            f"rate limited by Keybase API: {body}",
            KIND_RATE_LIMIT,
            status_code=status,
            temporary=True,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        )
    if status == 404:
        return APIError(f"user not found: {body}", KIND_NOT_FOUND, status_code=status)
    if 400 <= status < 500:
        return APIError(
            f"Keybase API rejected request: {body}", KIND_INVALID_INPUT, status_code=status,
        )
    if status >= 500:
        return APIError(
            f"Keybase API server error: {body}",
            KIND_SERVER_ERROR,
            status_code=status,
            temporary=True,
        )
    return APIError(f"unexpected HTTP status: {body}", KIND_INVALID_RESPONSE, status_code=status)


def to_keeper_error(err: APIError, usernames: Iterable[str]) -> KeeperError:
    """Translate a final APIError into the public error taxonomy."""
    names = ",".join(sorted(usernames))
    if err.kind == KIND_NOT_FOUND:
        return NotFound(err.message, username=names, operation="resolve")
    if err.kind == KIND_INVALID_INPUT:
        return InvalidArgument(err.message, username=names, operation="resolve")
    if err.kind == KIND_TIMEOUT:
        return DeadlineExceeded(str(err), username=names, operation="resolve")
    if err.temporary:
        return Unavailable(str(err), username=names, operation="resolve")
    return InternalError(str(err), username=names, operation="resolve")


class KeybaseClient:
    """Keybase user lookup client.

    Implements the resolver protocol consumed by ``CacheManager``:
    ``resolve(usernames, timeout, max_retries, retry_delay, cancel)``.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_ENDPOINT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_session = session is None
        self._session = session or requests.Session()
        self._session.headers.update({
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        })
        self._request_count = 0

    # ------------------------------------------------------------------
    # Single attempt
    # ------------------------------------------------------------------

    def _lookup_once(self, usernames: list[str], timeout: float) -> dict:
        self._request_count += 1
        try:
            response = self._session.get(
                f"{self.base_url}/user/lookup.json",
                params={"usernames": ",".join(usernames), "fields": "public_keys"},
                timeout=timeout,
            )
        except requests.Timeout as err:
            raise APIError(
                f"request to Keybase API timed out: {err}", KIND_TIMEOUT, temporary=True,
            ) from err
        except requests.RequestException as err:
            raise APIError(
                f"network error while connecting to Keybase API: {err}",
                KIND_NETWORK,
                temporary=True,
            ) from err

        if response.status_code != 200:
            raise classify_status(response)
        try:
            payload = response.json()
        except ValueError as err:
            raise APIError(
                f"failed to parse API response: {err}", KIND_INVALID_RESPONSE,
            ) from err

        status = payload.get("status") or {}
        code = status.get("code", 0)
        if code:
            kind = KIND_INVALID_RESPONSE
            if code == _STATUS_USER_NOT_FOUND:
                kind = KIND_NOT_FOUND
            elif code == _STATUS_BAD_USERNAME:
                kind = KIND_INVALID_INPUT
            raise APIError(
                f"API returned error: {status.get('name', 'UNKNOWN')} (code: {code})", kind,
            )
        return payload

    # ------------------------------------------------------------------
    # Response parsing
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_key(username: str, public_keys: dict[str, Any]) -> ResolvedKey:
        """Pick the user's NaCl encryption key out of ``public_keys``."""
        candidates = []
        primary = public_keys.get("primary") or {}
        if primary.get("kid"):
            candidates.append(primary["kid"])
        candidates.extend(public_keys.get("subkeys") or [])
        for kid in candidates:
            try:
                return ResolvedKey(
                    username=username,
                    public_key=public_key_from_kid(kid),
                    key_id=kid,
                )
            except InvalidArgument:
                continue
        raise APIError(
            f"user {username!r} has no NaCl encryption key", KIND_INVALID_RESPONSE,
        )

    def _parse(self, payload: dict, requested: list[str]) -> dict[str, ResolvedKey]:
        results: dict[str, ResolvedKey] = {}
        for user in payload.get("them") or []:
            if not user:
                continue
            username = (user.get("basics") or {}).get("username")
            if not username:
                continue
            # Keybase canonicalizes usernames to lower case.
            match = next(
                (name for name in requested if name.lower() == username.lower()), username,
            )
            results[match] = self._extract_key(match, user.get("public_keys") or {})

        missing = [name for name in requested if name not in results]
        if missing:
            raise APIError(
                f"users not found on Keybase: {', '.join(missing)}", KIND_NOT_FOUND,
            )
        return results

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def lookup_users(
        self,
        usernames: Iterable[str],
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        cancel: Optional[threading.Event] = None,
    ) -> dict[str, ResolvedKey]:
        """Fetch public keys for ``usernames`` in one batched request.

        Args:
            usernames: Keybase usernames to resolve.
            timeout: Per-request timeout in seconds.
            max_retries: Retries after the first attempt (transient errors only).
            retry_delay: Fixed delay between attempts, in seconds.
            cancel: Optional event that aborts the lookup.

        Returns:
            Mapping of username to ResolvedKey covering every requested user.

        Raises:
            InvalidArgument: Empty or malformed usernames, or a 4xx response.
            NotFound: Any requested user is unknown.
            DeadlineExceeded: Timed out on every attempt, or cancelled.
            Unavailable: Transient failures on every attempt.
        """
        requested = sorted(set(usernames))
        if not requested:
            raise InvalidArgument("no usernames provided", operation="resolve")
        for name in requested:
            try:
                validate_username(name)
            except ValueError as err:
                raise InvalidArgument(str(err), username=name, operation="resolve") from err

        def _sleep(seconds: float) -> None:
            cancellable_sleep(cancel, seconds)

        def _log_retry(retry_state) -> None:
            logger.warning(
                "Keybase lookup attempt %d failed for %s: %s",
                retry_state.attempt_number,
                ",".join(requested),
                retry_state.outcome.exception(),
            )

        retrying = Retrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=wait_fixed(retry_delay),
            retry=retry_if_exception(_is_transient),
            sleep=_sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    check_cancelled(cancel, "resolve")
                    payload = self._lookup_once(requested, timeout)
                    results = self._parse(payload, requested)
        except APIError as err:
            raise to_keeper_error(err, requested) from err

        logger.debug("Resolved %d Keybase user(s)", len(results))
        return results

    def resolve(
        self,
        usernames: Iterable[str],
        timeout: timedelta,
        max_retries: int,
        retry_delay: timedelta,
        cancel: Optional[threading.Event] = None,
    ) -> dict[str, ResolvedKey]:
        """Resolver protocol entry point used by the cache manager."""
        return self.lookup_users(
            usernames,
            timeout=timeout.total_seconds(),
            max_retries=max_retries,
            retry_delay=retry_delay.total_seconds(),
            cancel=cancel,
        )

    @property
    def request_count(self) -> int:
        return self._request_count

    def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session:
            self._session.close()
