"""
Slack Client Module
Rate-limit aware client for the Slack Web API
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from slack_mcp.utils.errors import ConfigurationError, RateLimitError, SlackAPIError
from slack_mcp.utils.logging import get_logger
from slack_mcp.utils.rate_limiter import RateLimitMetrics, SlackRateLimiter

logger = get_logger(__name__)

SLACK_API_URL = "https://slack.com/api"
DEFAULT_RETRY_AFTER = 1.0


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class RetryableRateLimitError(RateLimitError):
    """A 429 the retry policy may still retry"""


def wait_retry_after(retry_state: RetryCallState) -> float:
    """Wait as long as Slack's Retry-After asked, or the default"""
    retry_after = getattr(retry_state.outcome.exception(), "retry_after", None)
    return retry_after if retry_after is not None else DEFAULT_RETRY_AFTER


class SlackClient:
    """Wrapper for Slack API operations with pacing, a concurrency cap and 429 retries"""

    def __init__(
        self,
        token: str,
        rate_limiter: Optional[SlackRateLimiter] = None,
        metrics: Optional[RateLimitMetrics] = None,
        max_concurrency: int = 3,
        retries: int = 3,
        reject_rate_limited_calls: bool = False,
        enable_retry: bool = True,
        timeout: float = 30.0,
        client_type: str = "bot",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if not token:
            raise ConfigurationError(f"A Slack {client_type} token is required")
        if max_concurrency < 1:
            raise ConfigurationError("max_concurrency must be at least 1")

        self.token = token
        self.base_url = SLACK_API_URL
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json; charset=utf-8"
        }
        self.rate_limiter = rate_limiter
        self.metrics = metrics or RateLimitMetrics()
        self.retries = retries
        self.reject_rate_limited_calls = reject_rate_limited_calls
        self.enable_retry = enable_retry
        self.client_type = client_type
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=timeout,
            transport=transport,
        )

    async def _pace(self, method: str) -> None:
        if self.rate_limiter is None:
            return
        while True:
            wait = self.rate_limiter.wait_if_limited(method)
            if wait is None:
                return
            logger.debug("Pacing %s for %.2fs", method, wait)
            await self._sleep(wait)

    async def api_call(self, method: str, params: Optional[Dict[str, Any]] = None,
                       http_method: str = "GET") -> Dict[str, Any]:
        """
        Call a Web API method and return the decoded JSON body

        None-valued params are dropped. HTTP 429 is retried after Retry-After
        seconds until the retry budget runs out.

        Raises:
            RateLimitError: Still rate limited after retries, or rejection configured
            httpx.HTTPStatusError: Any other non-2xx status
        """
        payload = {k: v for k, v in (params or {}).items() if v is not None}

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retries + 1),
            retry=retry_if_exception_type(RetryableRateLimitError),
            wait=wait_retry_after,
            before_sleep=lambda retry_state: self.metrics.record_retry(),
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(self._send, method, payload, http_method)

    async def _send(self, method: str, payload: Dict[str, Any], http_method: str) -> Dict[str, Any]:
        await self._pace(method)
        self.metrics.record_request()

        async with self._semaphore:
            if http_method.upper() == "POST":
                response = await self.client.post(f"/{method}", json=payload)
            else:
                response = await self.client.get(f"/{method}", params=payload)

        if response.status_code == 429:
            retry_after = parse_retry_after(response)
            self.metrics.record_rate_limit(method, self.client_type, retry_after)

            message = f"Slack rate limit exceeded for {method}"
            if self.reject_rate_limited_calls or not self.enable_retry:
                raise RateLimitError(message, retry_after=retry_after)
            raise RetryableRateLimitError(message, retry_after=retry_after)

        response.raise_for_status()
        return response.json()

    async def post_message(self, channel: str, text: str,
                           blocks: Optional[List[Dict]] = None,
                           thread_ts: Optional[str] = None) -> Dict:
        """Send a message using chat.postMessage"""
        return await self.api_call("chat.postMessage", {
            "channel": channel,
            "text": text,
            "blocks": blocks,
            "thread_ts": thread_ts,
        }, http_method="POST")

    async def conversations_list(self, cursor: Optional[str] = None,
                                 limit: int = 200,
                                 types: str = "public_channel,private_channel",
                                 exclude_archived: bool = False) -> Dict:
        """List conversations in workspace"""
        return await self.api_call("conversations.list", {
            "cursor": cursor,
            "limit": limit,
            "types": types,
            "exclude_archived": "true" if exclude_archived else None,
        })

    async def conversations_history(self, channel: str,
                                    cursor: Optional[str] = None,
                                    limit: int = 100,
                                    oldest: Optional[str] = None,
                                    latest: Optional[str] = None) -> Dict:
        """Get conversation history"""
        return await self.api_call("conversations.history", {
            "channel": channel,
            "cursor": cursor,
            "limit": limit,
            "oldest": oldest,
            "latest": latest,
        })

    async def conversations_info(self, channel: str) -> Dict:
        return await self.api_call("conversations.info", {"channel": channel})

    async def conversations_members(self, channel: str,
                                    cursor: Optional[str] = None,
                                    limit: int = 200) -> Dict:
        return await self.api_call("conversations.members", {
            "channel": channel,
            "cursor": cursor,
            "limit": limit,
        })

    async def conversations_replies(self, channel: str, ts: str,
                                    cursor: Optional[str] = None,
                                    limit: int = 100) -> Dict:
        """Get thread replies"""
        return await self.api_call("conversations.replies", {
            "channel": channel,
            "ts": ts,
            "cursor": cursor,
            "limit": limit,
        })

    async def users_info(self, user: str) -> Dict:
        return await self.api_call("users.info", {"user": user})

    async def users_list(self, cursor: Optional[str] = None, limit: int = 200) -> Dict:
        return await self.api_call("users.list", {"cursor": cursor, "limit": limit})

    async def search_messages(self, query: str, count: int = 20, page: int = 1,
                              sort: str = "score", sort_dir: str = "desc") -> Dict:
        """Search messages (requires a user token)"""
        return await self.api_call("search.messages", {
            "query": query,
            "count": count,
            "page": page,
            "sort": sort,
            "sort_dir": sort_dir,
        })

    async def files_list(self, channel: Optional[str] = None, user: Optional[str] = None,
                         types: Optional[str] = None, count: int = 100,
                         page: int = 1) -> Dict:
        return await self.api_call("files.list", {
            "channel": channel,
            "user": user,
            "types": types,
            "count": count,
            "page": page,
        })

    async def files_info(self, file: str) -> Dict:
        return await self.api_call("files.info", {"file": file})

    async def reactions_add(self, channel: str, timestamp: str, name: str) -> Dict:
        return await self.api_call("reactions.add", {
            "channel": channel, "timestamp": timestamp, "name": name
        }, http_method="POST")

    async def reactions_remove(self, channel: str, timestamp: str, name: str) -> Dict:
        return await self.api_call("reactions.remove", {
            "channel": channel, "timestamp": timestamp, "name": name
        }, http_method="POST")

    async def reactions_get(self, channel: str, timestamp: str) -> Dict:
        return await self.api_call("reactions.get", {
            "channel": channel, "timestamp": timestamp, "full": "true"
        })

    async def team_info(self) -> Dict:
        return await self.api_call("team.info")

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()


class SlackClientManager:
    """Builds and hands out the bot and user clients"""

    def __init__(self, settings: Any,
                 rate_limiter: Optional[SlackRateLimiter] = None,
                 metrics: Optional[RateLimitMetrics] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.rate_limiter = rate_limiter or SlackRateLimiter(
            requests_per_minute=settings.slack_requests_per_minute,
            burst=settings.slack_rate_limit_burst,
        )
        self.metrics = metrics or RateLimitMetrics()
        self._transport = transport
        self._bot_client: Optional[SlackClient] = None
        self._user_client: Optional[SlackClient] = None

    def _build(self, token: str, client_type: str) -> SlackClient:
        logger.info("Creating Slack %s client", client_type)
        return SlackClient(
            token,
            rate_limiter=self.rate_limiter,
            metrics=self.metrics,
            max_concurrency=self.settings.slack_max_request_concurrency,
            retries=self.settings.slack_rate_limit_retries,
            reject_rate_limited_calls=self.settings.slack_reject_rate_limited_calls,
            enable_retry=self.settings.slack_enable_rate_limit_retry,
            timeout=self.settings.slack_request_timeout,
            client_type=client_type,
            transport=self._transport,
        )

    def get_bot_client(self) -> SlackClient:
        if self._bot_client is None:
            if not self.settings.slack_bot_token:
                raise ConfigurationError("SLACK_BOT_TOKEN is not configured")
            self._bot_client = self._build(self.settings.slack_bot_token, "bot")
        return self._bot_client

    def get_user_client(self) -> SlackClient:
        if self._user_client is None:
            if not self.settings.slack_user_token:
                raise SlackAPIError(
                    "This operation requires SLACK_USER_TOKEN", code="missing_user_token"
                )
            self._user_client = self._build(self.settings.slack_user_token, "user")
        return self._user_client

    def get_client_for_operation(self, operation: str) -> SlackClient:
        """Bot client for writes; reads use the user token when configured to"""
        if operation == "read" and self.settings.use_user_token_for_read \
                and self.settings.slack_user_token:
            return self.get_user_client()
        return self.get_bot_client()

    async def close(self) -> None:
        for client in (self._bot_client, self._user_client):
            if client is not None:
                await client.close()
        self._bot_client = None
        self._user_client = None
