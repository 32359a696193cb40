#!/usr/bin/env python3
"""
Unit tests for the Slack directory source.

Uses httpx.MockTransport so no request leaves the process.
"""

import os
import sys
import unittest
from unittest.mock import patch

import httpx

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from roster_sync.sources.base import SourceError
from roster_sync.sources.slack import SlackDirectorySource, SlackRateLimited


def member(member_id, email='{id}@example.org', **fields):
    profile = {
        'real_name': fields.pop('real_name', f"Member {member_id}"),
        'email': email.format(id=member_id.lower()) if email else None,
        'title': fields.pop('title', 'Consultant'),
        'image_512': fields.pop('image_512', f"https://avatars.slack-edge.com/{member_id}_512.png"),
    }
    profile.update(fields.pop('profile', {}))
    data = {'id': member_id, 'name': member_id.lower(), 'profile': profile}
    data.update(fields)
    return data


class TestSlackDirectorySource(unittest.TestCase):
    """Test cases for SlackDirectorySource."""

    def make_source(self, handler, **overrides):
        config = {'name': 'slack', 'token': 'xoxb-test', 'max_retries': 2, 'retry_wait_seconds': 0}
        config.update(overrides)
        client = httpx.Client(base_url='https://slack.test/api/', transport=httpx.MockTransport(handler))
        source = SlackDirectorySource(config, client=client)
        self.addCleanup(source.close)
        return source

    def test_pagination_follows_cursor(self):
        requests = []

        def handler(request):
            requests.append(request)
            if 'cursor' not in request.url.params:
                return httpx.Response(200, json={
                    'ok': True, 'members': [member('U1')],
                    'response_metadata': {'next_cursor': 'page2'}})
            return httpx.Response(200, json={
                'ok': True, 'members': [member('U2')], 'response_metadata': {'next_cursor': ''}})

        entries = self.make_source(handler, page_size=1).list_entries()

        self.assertEqual([e['source_id'] for e in entries], ['U1', 'U2'])
        self.assertEqual(len(requests), 2)
        self.assertEqual(requests[0].url.path, '/api/users.list')
        self.assertEqual(requests[0].url.params['limit'], '1')
        self.assertEqual(requests[1].url.params['cursor'], 'page2')
        self.assertEqual(requests[0].headers['Authorization'], 'Bearer xoxb-test')

    def test_filters_inactive_and_non_human_accounts(self):
        members = [
            member('U1'),
            member('U2', deleted=True),
            member('U3', is_bot=True),
            member('U4', is_app_user=True),
            member('U5', email=None),
        ]

        def handler(request):
            return httpx.Response(200, json={'ok': True, 'members': members})

        entries = self.make_source(handler).list_entries()
        self.assertEqual([e['source_id'] for e in entries], ['U1'])

    def test_member_mapping(self):
        entry = SlackDirectorySource.member_to_entry(member('U1', title='President'))
        self.assertEqual(entry, {
            'name': 'Member U1',
            'email': 'u1@example.org',
            'title': 'President',
            'image_ref': 'https://avatars.slack-edge.com/U1_512.png',
            'source_id': 'U1',
            'username': 'u1',
        })

    def test_member_mapping_fallbacks(self):
        data = member('U1', real_name='', image_512='',
                      profile={'display_name': 'ada', 'image_192': 'https://example.org/a_192.png'})
        entry = SlackDirectorySource.member_to_entry(data)
        self.assertEqual(entry['name'], 'ada')
        self.assertEqual(entry['image_ref'], 'https://example.org/a_192.png')

        bare = SlackDirectorySource.member_to_entry({'id': 'U9', 'name': 'nine', 'profile': {}})
        self.assertEqual(bare['name'], 'nine')
        self.assertIsNone(bare['image_ref'])

    @patch('roster_sync.sources.slack.time.sleep')
    def test_rate_limit_waits_for_retry_after(self, mock_sleep):
        responses = [
            httpx.Response(429, headers={'Retry-After': '3'}),
            httpx.Response(200, json={'ok': True, 'members': [member('U1')]}),
        ]

        def handler(request):
            return responses.pop(0)

        entries = self.make_source(handler).list_entries()

        self.assertEqual(len(entries), 1)
        mock_sleep.assert_called_once_with(3.0)

    @patch('roster_sync.sources.slack.time.sleep')
    def test_ratelimited_error_payload_is_retried(self, mock_sleep):
        responses = [
            httpx.Response(200, json={'ok': False, 'error': 'ratelimited'}),
            httpx.Response(200, json={'ok': True, 'members': []}),
        ]

        def handler(request):
            return responses.pop(0)

        self.assertEqual(self.make_source(handler).list_entries(), [])
        mock_sleep.assert_called_once_with(1.0)

    def test_api_error_raises_source_error(self):
        def handler(request):
            return httpx.Response(200, json={'ok': False, 'error': 'invalid_auth'})

        with self.assertRaises(SourceError) as ctx:
            self.make_source(handler).list_entries()
        self.assertIn('invalid_auth', str(ctx.exception))

    def test_invalid_json_raises_source_error(self):
        def handler(request):
            return httpx.Response(200, content=b'<html>maintenance</html>')

        with self.assertRaises(SourceError) as ctx:
            self.make_source(handler).list_entries()
        self.assertIn('invalid JSON', str(ctx.exception))

    def test_unreadable_retry_after_raises_source_error(self):
        def handler(request):
            return httpx.Response(429, headers={'Retry-After': 'soon'})

        with self.assertRaises(SourceError) as ctx:
            self.make_source(handler).list_entries()
        self.assertIn('Retry-After', str(ctx.exception))

    def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(403)

        with self.assertRaises(SourceError):
            self.make_source(handler).list_entries()
        self.assertEqual(len(calls), 1)

    def test_server_errors_exhaust_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        with self.assertRaises(SourceError) as ctx:
            self.make_source(handler, max_retries=2).list_entries()
        self.assertEqual(len(calls), 3)
        self.assertIn('503', str(ctx.exception))

    def test_transport_errors_are_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError('connection refused', request=request)
            return httpx.Response(200, json={'ok': True, 'members': [member('U1')]})

        self.assertEqual(len(self.make_source(handler).list_entries()), 1)
        self.assertEqual(len(calls), 2)

    def test_connection_check(self):
        def handler(request):
            self.assertEqual(request.url.path, '/api/auth.test')
            return httpx.Response(200, json={'ok': True, 'user': 'rosterbot', 'team': 'Example'})

        self.assertTrue(self.make_source(handler).test_connection())

    def test_connection_check_failure(self):
        def handler(request):
            return httpx.Response(200, json={'ok': False, 'error': 'not_authed'})

        self.assertFalse(self.make_source(handler).test_connection())

    def test_rate_limited_carries_retry_after(self):
        error = SlackRateLimited(12.0)
        self.assertEqual(error.retry_after, 12.0)
        self.assertIn('12.0', str(error))


if __name__ == '__main__':
    unittest.main()
