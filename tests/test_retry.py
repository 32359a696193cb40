#!/usr/bin/env python3
"""
Unit tests for retry helpers.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

import httpx

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from roster_sync.retry import (
    MaxRetriesExceeded,
    RetryableError,
    async_retry_call,
    create_retry_callback,
    is_retryable_error,
    retry_call,
)
from roster_sync.sinks.base import SinkAPIError


class TestRetryCall(unittest.TestCase):
    """Test cases for retry_call."""

    def test_success_first_attempt(self):
        func = Mock(return_value='ok')
        self.assertEqual(retry_call(func, ('a',), {'b': 1}, delay=0), 'ok')
        func.assert_called_once_with('a', b=1)

    def test_success_after_failures(self):
        func = Mock(side_effect=[ConnectionError('reset'), ConnectionError('reset'), 'ok'])
        self.assertEqual(retry_call(func, max_attempts=3, delay=0), 'ok')
        self.assertEqual(func.call_count, 3)

    def test_max_retries_exceeded(self):
        error = ValueError('always')
        func = Mock(side_effect=error)
        with self.assertRaises(MaxRetriesExceeded) as ctx:
            retry_call(func, max_attempts=2, delay=0)
        self.assertEqual(ctx.exception.attempts, 2)
        self.assertIs(ctx.exception.last_exception, error)
        self.assertEqual(func.call_count, 2)

    def test_unlisted_exception_propagates_immediately(self):
        func = Mock(side_effect=KeyError('boom'))
        with self.assertRaises(KeyError):
            retry_call(func, max_attempts=3, delay=0, exceptions=(ConnectionError,))
        func.assert_called_once()

    @patch('roster_sync.retry.time.sleep')
    def test_backoff_delays(self, mock_sleep):
        func = Mock(side_effect=[OSError(), OSError(), 'ok'])
        retry_call(func, max_attempts=3, delay=1.0, backoff=2.0)
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [1.0, 2.0])

    def test_callback_invoked_between_attempts(self):
        callback = Mock()
        func = Mock(side_effect=[OSError('one'), 'ok'])
        retry_call(func, max_attempts=3, delay=0, on_retry=callback)
        callback.assert_called_once()
        self.assertEqual(callback.call_args.args[0], 1)

    def test_failing_callback_does_not_break_retry(self):
        func = Mock(side_effect=[OSError('one'), 'ok'])
        self.assertEqual(retry_call(func, delay=0, on_retry=Mock(side_effect=RuntimeError('cb'))), 'ok')

    def test_zero_attempts_still_calls_once(self):
        func = Mock(return_value=1)
        retry_call(func, max_attempts=0, delay=0)
        func.assert_called_once()


class TestAsyncRetryCall(unittest.IsolatedAsyncioTestCase):

    async def test_retries_until_success(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 2:
                raise RetryableError('try again')
            return 'done'

        self.assertEqual(await async_retry_call(flaky, max_attempts=3, delay=0), 'done')
        self.assertEqual(len(attempts), 2)

    async def test_non_retryable_raised_immediately(self):
        attempts = []

        async def broken():
            attempts.append(1)
            raise ValueError('bad input')

        with self.assertRaises(ValueError):
            await async_retry_call(broken, max_attempts=3, delay=0, should_retry=is_retryable_error)
        self.assertEqual(len(attempts), 1)

    async def test_exhausted(self):
        async def down():
            raise ConnectionError('refused')

        with self.assertRaises(MaxRetriesExceeded):
            await async_retry_call(down, max_attempts=2, delay=0)


class TestIsRetryableError(unittest.TestCase):

    def test_connection_and_timeouts(self):
        self.assertTrue(is_retryable_error(ConnectionError('x')))
        self.assertTrue(is_retryable_error(TimeoutError('x')))
        self.assertTrue(is_retryable_error(RetryableError('x')))

    def test_httpx_errors(self):
        request = httpx.Request('GET', 'https://example.com/a.png')
        self.assertTrue(is_retryable_error(httpx.ConnectTimeout('slow', request=request)))
        self.assertTrue(is_retryable_error(httpx.ConnectError('down', request=request)))

        for status, expected in ((429, True), (503, True), (404, False), (403, False)):
            response = httpx.Response(status, request=request)
            error = httpx.HTTPStatusError('status', request=request, response=response)
            with self.subTest(status=status):
                self.assertEqual(is_retryable_error(error), expected)

    def test_status_code_attribute(self):
        self.assertTrue(is_retryable_error(SinkAPIError('HTTP 502', 502)))
        self.assertFalse(is_retryable_error(SinkAPIError('HTTP 400', 400)))

    def test_message_patterns(self):
        self.assertTrue(is_retryable_error(Exception('Service Unavailable right now')))
        self.assertFalse(is_retryable_error(Exception('invalid document')))

    def test_unwraps_max_retries(self):
        self.assertTrue(is_retryable_error(MaxRetriesExceeded(3, ConnectionError('x'))))
        self.assertFalse(is_retryable_error(MaxRetriesExceeded(3, ValueError('x'))))


class TestCreateRetryCallback(unittest.TestCase):

    def test_logs_warning(self):
        callback = create_retry_callback('Sink create for a@x.org')
        with self.assertLogs('roster_sync.retry', level='WARNING') as logs:
            callback(1, ConnectionError('reset'))
        self.assertIn('Sink create for a@x.org failed on attempt 1', logs.output[0])


if __name__ == '__main__':
    unittest.main()
