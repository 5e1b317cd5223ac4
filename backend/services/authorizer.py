"""Remote Authorization Client.

Submits a scanned code to the remote authorization service. One call is one
attempt with a hard timeout; retries belong to the authorization workflow.
"""

import asyncio
import json
import logging
from typing import Any, Protocol

import aiohttp
from pydantic import ValidationError

from config import get_config
from models import AuthorizationResult

logger = logging.getLogger(__name__)


class AuthorizerError(Exception):
    """A single authorization attempt failed (transport, HTTP or config)."""


class RemoteAuthorizer(Protocol):
    """Checks a code against the remote authorization service."""

    async def check(self, code: str) -> AuthorizationResult:
        ...


def build_query_params(code: str, code_param: str = "", location_id: str = "") -> dict[str, str]:
    """Build authorization query parameters.

    code_param may be empty (sends ``code=<code>``), a bare parameter name
    (sends ``<name>=<code>``) or a JSON object whose values equal to "code"
    (case-insensitive) are replaced by the scanned code. location_id is added
    unless the parameters already carry one.
    """
    params: dict[str, str] = {}
    raw = code_param.strip()

    if not raw:
        params["code"] = code
    elif raw.startswith("{") and raw.endswith("}"):
        try:
            template = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"code_param JSON parse failed, using it as parameter name: {e}")
            params[raw] = code
        else:
            for key, value in template.items():
                if isinstance(value, str) and value.lower() == "code":
                    params[key] = code
                else:
                    params[key] = "" if value is None else str(value)
    else:
        params[raw] = code

    if location_id and not any(key.lower() == "location_id" for key in params):
        params["location_id"] = location_id

    return params


class HttpAuthorizer:
    """Authorization service client over HTTPS."""

    async def check(self, code: str) -> AuthorizationResult:
        """Run one authorization attempt.

        Args:
            code: Scanned QR/badge code.

        Returns:
            Parsed authorization decision.

        Raises:
            AuthorizerError: On missing configuration, timeout, transport
                             failure or non-2xx response.
        """
        config = get_config().authorizer
        if not config.url or not config.token:
            raise AuthorizerError("authorizer url or token not configured")

        params = build_query_params(code, config.code_param, config.location_id)
        timeout = aiohttp.ClientTimeout(total=config.timeout_seconds)
        headers = {"Authorization": f"Bearer {config.token}"}

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(config.url, params=params, headers=headers) as resp:
                    if resp.status >= 400:
                        text = await resp.text(errors="replace")
                        raise AuthorizerError(f"HTTP {resp.status} {text[:200]}".strip())
                    try:
                        data: Any = await resp.json(content_type=None)
                    except ValueError:
                        data = {}
        except asyncio.TimeoutError as e:
            raise AuthorizerError(f"timeout after {config.timeout_seconds}s") from e
        except aiohttp.ClientError as e:
            raise AuthorizerError(str(e) or type(e).__name__) from e

        if not isinstance(data, dict):
            data = {}
        try:
            return AuthorizationResult.model_validate(data)
        except ValidationError as e:
            raise AuthorizerError(f"unexpected response: {e}") from e
