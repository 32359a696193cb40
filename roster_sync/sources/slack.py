"""
Slack workspace directory source.

Reads workspace members through the Slack Web API (`users.list`, cursor
paginated) and maps each active human member to a raw directory entry.
"""

import time
import logging
from typing import Any, Dict, List, Optional

import httpx

from roster_sync.retry import MaxRetriesExceeded, RetryableError, retry_call, create_retry_callback
from .base import SourceAdapterBase, SourceError

logger = logging.getLogger(__name__)

SLACK_API_URL = 'https://slack.com/api/'
IMAGE_FIELDS = ('image_512', 'image_192', 'image_72')


class SlackRateLimited(RetryableError):
    def __init__(self, retry_after: float):
        super().__init__(f"Slack rate limited, retry after {retry_after}s")
        self.retry_after = retry_after


class SlackDirectorySource(SourceAdapterBase):
    """
    Slack `users.list` source.

    Configuration keys:
        token: Bot token with users:read and users:read.email scopes
        page_size: Members per page (default 200)
        api_url: Override of the Web API base URL
    """

    def __init__(self, config: Dict[str, Any], client: Optional[httpx.Client] = None):
        super().__init__(config)
        self.token = config.get('token')
        self.page_size = config.get('page_size', 200)
        self.max_retries = config.get('max_retries', 3)
        self.retry_wait = config.get('retry_wait_seconds', 5)
        self._client = client or httpx.Client(
            base_url=config.get('api_url', SLACK_API_URL),
            timeout=config.get('timeout_seconds', 30),
        )

    def list_entries(self) -> List[Dict[str, Any]]:
        members = self._list_members()
        entries = [self.member_to_entry(member) for member in members if self.is_active_human(member)]
        logger.info(f"Found {len(entries)} active members out of {len(members)} Slack accounts")
        return entries

    def _list_members(self) -> List[Dict[str, Any]]:
        members: List[Dict[str, Any]] = []
        cursor = None
        page = 0

        while True:
            params = {'limit': self.page_size, 'include_locale': 'true'}
            if cursor:
                params['cursor'] = cursor

            try:
                payload = retry_call(
                    self._call, ('users.list', params),
                    max_attempts=self.max_retries + 1,
                    delay=self.retry_wait,
                    exceptions=(RetryableError, httpx.TransportError),
                    on_retry=self._on_retry,
                )
            except MaxRetriesExceeded as e:
                raise SourceError(f"Slack users.list failed: {e.last_exception}")

            page += 1
            members.extend(payload.get('members', []))
            cursor = (payload.get('response_metadata') or {}).get('next_cursor')
            logger.debug(f"users.list page {page}: {len(members)} members so far")
            if not cursor:
                return members

    @staticmethod
    def _on_retry(attempt: int, exc: Exception) -> None:
        create_retry_callback('Slack users.list')(attempt, exc)
        if isinstance(exc, SlackRateLimited):
            time.sleep(exc.retry_after)

    def _call(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        response = self._client.get(method, params=params,
                                    headers={'Authorization': f"Bearer {self.token}"})

        if response.status_code == 429:
            raise SlackRateLimited(self._retry_after(response))
        if response.status_code >= 500:
            raise RetryableError(f"Slack API HTTP {response.status_code}")
        if response.status_code >= 400:
            raise SourceError(f"Slack API HTTP {response.status_code} for {method}")

        try:
            payload = response.json()
        except ValueError as e:
            raise SourceError(f"Slack API returned invalid JSON for {method}: {e}")
        if not isinstance(payload, dict):
            raise SourceError(f"Slack API returned an unexpected payload for {method}")
        if not payload.get('ok'):
            error = payload.get('error', 'unknown_error')
            if error == 'ratelimited':
                raise SlackRateLimited(self._retry_after(response))
            raise SourceError(f"Slack API error for {method}: {error}")
        return payload

    @staticmethod
    def _retry_after(response: httpx.Response) -> float:
        value = response.headers.get('Retry-After', '1')
        try:
            return max(0.0, float(value))
        except ValueError:
            raise SourceError(f"Slack sent an unreadable Retry-After header: {value!r}")

    @staticmethod
    def is_active_human(member: Dict[str, Any]) -> bool:
        profile = member.get('profile') or {}
        return (not member.get('deleted')
                and not member.get('is_bot')
                and not member.get('is_app_user')
                and bool(profile.get('email')))

    @staticmethod
    def member_to_entry(member: Dict[str, Any]) -> Dict[str, Any]:
        profile = member.get('profile') or {}
        image_ref = next((profile[field] for field in IMAGE_FIELDS if profile.get(field)), None)
        return {
            'name': profile.get('real_name') or profile.get('display_name') or member.get('name'),
            'email': profile.get('email'),
            'title': profile.get('title'),
            'image_ref': image_ref,
            'source_id': member.get('id'),
            'username': member.get('name'),
        }

    def test_connection(self) -> bool:
        try:
            payload = self._call('auth.test', {})
        except (SourceError, RetryableError, httpx.HTTPError) as e:
            logger.error(f"Slack connection failed: {e}")
            return False
        logger.info(f"Slack connection OK (bot={payload.get('user')}, team={payload.get('team')})")
        return True

    def close(self) -> None:
        self._client.close()
