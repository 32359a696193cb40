#!/usr/bin/env python3
"""
Unit tests for SinkAdapterBase.

Covers authentication header setup, TLS context creation and the JSON
request helper, with http.client connections mocked.
"""

import os
import sys
import json
import base64
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from roster_sync.sinks.base import SinkAdapterBase, SinkAPIError, SinkAuthenticationError


class MockSink(SinkAdapterBase):
    """Minimal concrete sink for exercising the base class."""

    def list_existing(self):
        return self.request('GET', '/records').get('records', [])

    def create(self, record):
        pass

    def update(self, identity, record):
        pass

    def delete(self, identity):
        pass


def http_response(status, payload=None, reason='OK'):
    response = Mock()
    response.status = status
    response.reason = reason
    response.read.return_value = json.dumps(payload).encode() if payload is not None else b''
    return response


class TestSinkInitialization(unittest.TestCase):

    def test_url_parsing(self):
        sink = MockSink({'name': 'cms', 'base_url': 'https://abc.api.sanity.io/v2021-06-07/'})
        self.assertEqual(sink.name, 'cms')
        self.assertEqual(sink.host, 'abc.api.sanity.io')
        self.assertEqual(sink.base_path, '/v2021-06-07')
        self.assertIsNotNone(sink.ssl_context)

    def test_plain_http_has_no_tls(self):
        sink = MockSink({'base_url': 'http://localhost:3333'})
        self.assertIsNone(sink.ssl_context)
        self.assertEqual(sink.name, 'MockSink')

    def test_missing_ca_file(self):
        with self.assertRaises(SinkAPIError):
            MockSink({'base_url': 'https://cms.example.org', 'ca_cert_file': '/nonexistent/ca.pem'})


class TestAuthentication(unittest.TestCase):

    def test_basic(self):
        sink = MockSink({'base_url': 'https://cms.example.org',
                         'auth': {'method': 'basic', 'username': 'user', 'password': 'pass'}})
        expected = base64.b64encode(b'user:pass').decode()
        self.assertEqual(sink.auth_headers['Authorization'], f'Basic {expected}')
        self.assertTrue(sink.authenticate())

    def test_token(self):
        for method in ('token', 'bearer'):
            sink = MockSink({'base_url': 'https://cms.example.org', 'auth': {'method': method, 'token': 'abc'}})
            self.assertEqual(sink.auth_headers['Authorization'], 'Bearer abc')

    def test_token_missing(self):
        sink = MockSink({'base_url': 'https://cms.example.org', 'auth': {'method': 'token'}})
        self.assertNotIn('Authorization', sink.auth_headers)

    def test_unknown_method(self):
        sink = MockSink({'base_url': 'https://cms.example.org', 'auth': {'method': 'kerberos'}})
        self.assertFalse(sink.authenticate())

    @patch('roster_sync.sinks.base.HTTPSConnection')
    def test_oauth2_token_fetch(self, mock_conn_cls):
        token_conn = Mock()
        token_conn.getresponse.return_value = http_response(200, {'access_token': 'tok', 'expires_in': 3600})
        mock_conn_cls.return_value = token_conn

        sink = MockSink({'base_url': 'https://cms.example.org', 'auth': {
            'method': 'oauth2', 'client_id': 'id', 'client_secret': 'secret',
            'token_url': 'https://auth.example.org/oauth/token'}})

        self.assertTrue(sink.authenticate())
        self.assertEqual(sink.auth_headers['Authorization'], 'Bearer tok')
        method, path, body, headers = token_conn.request.call_args.args
        self.assertEqual((method, path), ('POST', '/oauth/token'))
        self.assertIn('grant_type=client_credentials', body)
        # Cached until expiry
        self.assertTrue(sink.authenticate())
        self.assertEqual(token_conn.request.call_count, 1)


class TestRequest(unittest.TestCase):

    def setUp(self):
        self.sink = MockSink({'name': 'cms', 'base_url': 'https://cms.example.org/v1',
                              'auth': {'method': 'token', 'token': 'abc'}})

    @patch('roster_sync.sinks.base.HTTPSConnection')
    def test_json_round_trip(self, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.getresponse.return_value = http_response(200, {'records': [{'email': 'a@x.org'}]})

        result = self.sink.request('POST', '/data/mutate?returnIds=true', body={'mutations': []})

        self.assertEqual(result, {'records': [{'email': 'a@x.org'}]})
        method, path, body, headers = conn.request.call_args.args
        self.assertEqual(method, 'POST')
        self.assertEqual(path, '/v1/data/mutate?returnIds=true')
        self.assertEqual(json.loads(body), {'mutations': []})
        self.assertEqual(headers['Content-Type'], 'application/json')
        self.assertEqual(headers['Authorization'], 'Bearer abc')

    @patch('roster_sync.sinks.base.HTTPSConnection')
    def test_raw_body(self, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.getresponse.return_value = http_response(200, {'document': {'_id': 'image-1'}})

        self.sink.request('POST', '/assets/images/production', headers={'Content-Type': 'image/png'},
                          raw_body=b'\x89PNG')

        method, path, body, headers = conn.request.call_args.args
        self.assertEqual(body, b'\x89PNG')
        self.assertEqual(headers['Content-Type'], 'image/png')

    @patch('roster_sync.sinks.base.HTTPSConnection')
    def test_empty_body(self, mock_conn_cls):
        mock_conn_cls.return_value.getresponse.return_value = http_response(204)
        self.assertEqual(self.sink.request('DELETE', '/records/1'), {})

    @patch('roster_sync.sinks.base.HTTPSConnection')
    def test_http_error_carries_status(self, mock_conn_cls):
        mock_conn_cls.return_value.getresponse.return_value = http_response(
            503, {'error': 'down'}, reason='Service Unavailable')
        with self.assertRaises(SinkAPIError) as ctx:
            self.sink.request('GET', '/records')
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertIn('Service Unavailable', str(ctx.exception))

    @patch('roster_sync.sinks.base.HTTPSConnection')
    def test_unauthorized(self, mock_conn_cls):
        mock_conn_cls.return_value.getresponse.return_value = http_response(401, reason='Unauthorized')
        with self.assertRaises(SinkAuthenticationError):
            self.sink.request('GET', '/records')

    @patch('roster_sync.sinks.base.HTTPSConnection')
    def test_invalid_json(self, mock_conn_cls):
        response = http_response(200)
        response.read.return_value = b'<html>'
        mock_conn_cls.return_value.getresponse.return_value = response
        with self.assertRaises(SinkAPIError):
            self.sink.request('GET', '/records')

    @patch('roster_sync.sinks.base.HTTPSConnection')
    def test_connection_error_resets_connection(self, mock_conn_cls):
        mock_conn_cls.return_value.request.side_effect = ConnectionResetError('reset by peer')
        with self.assertRaises(SinkAPIError):
            self.sink.request('GET', '/records')
        self.assertIsNone(self.sink.connection)

    @patch('roster_sync.sinks.base.HTTPSConnection')
    def test_oauth2_refresh_on_401(self, mock_conn_cls):
        api_conn, token_conn = Mock(), Mock()
        api_conn.getresponse.side_effect = [http_response(401), http_response(200, {'records': []})]
        token_conn.getresponse.return_value = http_response(200, {'access_token': 'fresh'})
        mock_conn_cls.side_effect = [api_conn, token_conn]

        sink = MockSink({'base_url': 'https://cms.example.org', 'auth': {
            'method': 'oauth2', 'client_id': 'id', 'client_secret': 'secret',
            'token_url': 'https://auth.example.org/token'}})

        self.assertEqual(sink.list_existing(), [])
        retry_headers = api_conn.request.call_args.args[3]
        self.assertEqual(retry_headers['Authorization'], 'Bearer fresh')

    @patch('roster_sync.sinks.base.HTTPSConnection')
    def test_connection_test(self, mock_conn_cls):
        mock_conn_cls.return_value.getresponse.return_value = http_response(500, reason='Internal Server Error')
        self.assertFalse(self.sink.test_connection())

    @patch('roster_sync.sinks.base.HTTPSConnection')
    def test_context_manager_closes(self, mock_conn_cls):
        mock_conn_cls.return_value.getresponse.return_value = http_response(200, {'records': []})
        with self.sink as sink:
            sink.list_existing()
        mock_conn_cls.return_value.close.assert_called_once()
        self.assertIsNone(self.sink.connection)


if __name__ == '__main__':
    unittest.main()
