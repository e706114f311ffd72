"""
HTTP client for the Frontend API.

This module covers the endpoints the sync engine needs: environment and
client fetches, sign-in steps, session mutations and session token
minting. Every mutating response embeds the updated client, which is
handed to the registered client-update callback.
"""

import asyncio
import json
import logging
import random
from typing import Optional, Dict, Any, List, Tuple
from urllib.parse import quote

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from shared.exceptions import TransportError, StorageError, ErrorCode
from shared.interfaces import IFrontendAPI, IStorage, ClientUpdateCallback
from shared.models import Client, Environment, SignIn, ApiErrorDetail

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry logic."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


class FrontendAPIClient(IFrontendAPI):
    """
    aiohttp client for the Frontend API.

    Requests are made in native mode: the Authorization value returned by
    the server is stored and replayed instead of relying on cookies.
    """

    def __init__(
        self,
        base_url: str,
        storage: IStorage,
        store_prefix: str = "",
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        user_agent: str = "authsync/0.1"
    ):
        self.base_url = base_url.rstrip('/')
        self.storage = storage
        self.authorization_key = f"{store_prefix}authorization"
        self.timeout = ClientTimeout(total=timeout)
        self.retry_config = retry_config or RetryConfig()
        self.user_agent = user_agent

        self._session: Optional[ClientSession] = None
        self._client_update_callback: Optional[ClientUpdateCallback] = None

        logger.info(f"Frontend API client initialized for {self.base_url}")

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={
                    'User-Agent': self.user_agent,
                    'x-mobile': '1',
                    'x-no-origin': '1'
                }
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def set_client_update_callback(self, callback: Optional[ClientUpdateCallback]) -> None:
        self._client_update_callback = callback

    async def _load_authorization(self) -> Optional[str]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self.storage.get, self.authorization_key)
        except StorageError as e:
            logger.warning(f"Could not read stored authorization: {e}")
            return None

    async def _save_authorization(self, value: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            stored = await loop.run_in_executor(None, self.storage.set, self.authorization_key, value)
        except StorageError as e:
            logger.warning(f"Could not persist authorization: {e}")
            return
        if not stored:
            logger.warning("Storage rejected the authorization value")

    async def _make_request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        retry: Optional[bool] = None
    ) -> Dict[str, Any]:
        """
        Make HTTP request with retry logic and error handling.

        Args:
            method: HTTP method (GET, POST, DELETE)
            path: API path, starting with /v1
            data: Form fields for the request body; None values are omitted
            params: Extra query parameters
            retry: Whether to retry network failures. Defaults to GET only.

        Returns:
            Response body as dictionary

        Raises:
            TransportError: On network failure or a non-2xx response
        """
        await self._ensure_session()

        if retry is None:
            retry = method == 'GET'

        url = f"{self.base_url}{path}"
        query = {'_is_native': '1'}
        if params:
            query.update({k: _form_value(v) for k, v in params.items() if v is not None})
        form = {k: _form_value(v) for k, v in (data or {}).items() if v is not None}

        headers = {}
        authorization = await self._load_authorization()
        if authorization:
            headers['Authorization'] = authorization

        max_attempts = self.retry_config.max_retries + 1 if retry else 1
        last_exception: Optional[BaseException] = None

        for attempt in range(max_attempts):
            try:
                logger.debug(f"Making {method} request to {url} (attempt {attempt + 1})")

                async with self._session.request(
                    method=method,
                    url=url,
                    params=query,
                    data=form if method != 'GET' else None,
                    headers=headers
                ) as response:

                    new_authorization = response.headers.get('Authorization')
                    if new_authorization:
                        await self._save_authorization(new_authorization)

                    if 200 <= response.status < 300:
                        try:
                            body = await response.json(content_type=None)
                        except (json.JSONDecodeError, aiohttp.ContentTypeError):
                            return {}
                        return body if isinstance(body, dict) else {}

                    raise await self._get_error_response(response, method, path)

            except (ClientError, asyncio.TimeoutError, OSError) as e:
                last_exception = e
                logger.warning(f"Network error on {method} {path} attempt {attempt + 1}: {e}")

                if attempt + 1 >= max_attempts:
                    break

                delay = self.retry_config.delay_for(attempt)
                logger.info(f"Retrying in {delay:.1f} seconds...")
                await asyncio.sleep(delay)

        error_code = (
            ErrorCode.TRANSPORT_TIMEOUT if isinstance(last_exception, asyncio.TimeoutError)
            else ErrorCode.TRANSPORT_CONNECTION_FAILED
        )
        raise TransportError(
            f"{method} {path} failed after {max_attempts} attempt(s): {last_exception}",
            error_code=error_code,
            cause=last_exception
        )

    async def _get_error_response(self, response, method: str, path: str) -> TransportError:
        """Build a TransportError from an error response."""
        errors: List[ApiErrorDetail] = []
        try:
            body = await response.json(content_type=None)
            if isinstance(body, dict):
                errors = [
                    ApiErrorDetail.from_dict(item)
                    for item in body.get('errors') or []
                    if isinstance(item, dict)
                ]
        except (json.JSONDecodeError, aiohttp.ContentTypeError, UnicodeDecodeError):
            logger.debug(f"Error response for {method} {path} has no JSON body")

        first = errors[0] if errors else None
        detail = (first.long_message or first.message) if first else response.reason
        return TransportError(
            f"{method} {path} failed ({response.status}): {detail}",
            status=response.status,
            code=first.code if first else None,
            errors=errors,
            user_message=first.message if first else None
        )

    async def _notify_client_update(self, client_data: Optional[Dict[str, Any]]) -> Optional[Client]:
        client = Client.from_dict(client_data) if client_data else None
        if self._client_update_callback:
            await self._client_update_callback(client)
        return client

    async def _mutate(self, method: str, path: str,
                      data: Optional[Dict[str, Any]] = None) -> Tuple[Dict[str, Any], Optional[Client]]:
        """Perform a mutating call and forward the embedded client."""
        body = await self._make_request(method, path, data=data)
        client = await self._notify_client_update(body.get('client'))
        return body, client

    @staticmethod
    def _sign_in(body: Dict[str, Any]) -> SignIn:
        data = body.get('response')
        if not isinstance(data, dict):
            raise TransportError("Sign-in response has no sign_in object",
                                 status=200, error_code=ErrorCode.TRANSPORT_INVALID_RESPONSE)
        return SignIn.from_dict(data)

    # Environment and client

    async def get_environment(self) -> Environment:
        body = await self._make_request('GET', '/v1/environment')
        return Environment.from_dict(body)

    async def get_client(self) -> Optional[Client]:
        body = await self._make_request('GET', '/v1/client')
        data = body.get('response')
        return Client.from_dict(data) if data else None

    # Sign-in flow

    async def create_sign_in(self, params: Dict[str, Any]) -> SignIn:
        body, _ = await self._mutate('POST', '/v1/client/sign_ins', data=params)
        return self._sign_in(body)

    async def prepare_first_factor(self, sign_in_id: str, params: Dict[str, Any]) -> SignIn:
        body, _ = await self._mutate(
            'POST', f"/v1/client/sign_ins/{quote(sign_in_id, safe='')}/prepare_first_factor", data=params
        )
        return self._sign_in(body)

    async def attempt_first_factor(self, sign_in_id: str, params: Dict[str, Any]) -> SignIn:
        body, _ = await self._mutate(
            'POST', f"/v1/client/sign_ins/{quote(sign_in_id, safe='')}/attempt_first_factor", data=params
        )
        return self._sign_in(body)

    async def attempt_second_factor(self, sign_in_id: str, params: Dict[str, Any]) -> SignIn:
        body, _ = await self._mutate(
            'POST', f"/v1/client/sign_ins/{quote(sign_in_id, safe='')}/attempt_second_factor", data=params
        )
        return self._sign_in(body)

    # Sessions

    async def touch_session(self, session_id: str,
                            active_organization_id: Optional[str] = None) -> Optional[Client]:
        _, client = await self._mutate(
            'POST', f"/v1/client/sessions/{quote(session_id, safe='')}/touch",
            data={'active_organization_id': active_organization_id}
        )
        return client

    async def remove_session(self, session_id: str) -> Optional[Client]:
        _, client = await self._mutate('POST', f"/v1/client/sessions/{quote(session_id, safe='')}/remove")
        return client

    async def end_session(self, session_id: str) -> Optional[Client]:
        _, client = await self._mutate('POST', f"/v1/client/sessions/{quote(session_id, safe='')}/end")
        return client

    async def remove_client_sessions(self) -> Optional[Client]:
        _, client = await self._mutate('DELETE', '/v1/client/sessions')
        return client

    # Tokens

    @staticmethod
    def _jwt(body: Dict[str, Any], session_id: str) -> str:
        token = body.get('jwt')
        if not token:
            raise TransportError(f"Token response for session {session_id} has no jwt",
                                 status=200, error_code=ErrorCode.TRANSPORT_INVALID_RESPONSE)
        return token

    async def create_session_token(self, session_id: str,
                                   organization_id: Optional[str] = None) -> str:
        body = await self._make_request(
            'POST', f"/v1/client/sessions/{quote(session_id, safe='')}/tokens",
            data={'organization_id': organization_id}
        )
        return self._jwt(body, session_id)

    async def create_session_token_from_template(self, session_id: str, template: str) -> str:
        body = await self._make_request(
            'POST',
            f"/v1/client/sessions/{quote(session_id, safe='')}/tokens/{quote(template, safe='')}"
        )
        return self._jwt(body, session_id)
