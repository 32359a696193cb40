"""
Base sink adapter interface and shared HTTP plumbing.

Every sink (the system that publishes the roster) inherits from
`SinkAdapterBase` and implements listing plus create/update/delete keyed by
identity. The base class provides an HTTP/JSON client with TLS and
Basic/Bearer/OAuth2 authentication.
"""

import json
import ssl
import time
import base64
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlencode, urljoin, urlparse
from http.client import HTTPConnection, HTTPSConnection

from roster_sync.models import ExistingRecord, ProfileRecord

logger = logging.getLogger(__name__)


class SinkAPIError(Exception):
    """Raised when a sink API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SinkAuthenticationError(SinkAPIError):
    """Raised when the sink rejects our credentials."""
    pass


class SinkAdapterBase(ABC):
    """
    Abstract base class for sink adapters.

    Writes must be idempotent by identity: `create` and `update` may be retried
    after a transient failure.
    """

    timeout = 30

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize sink client.

        Args:
            config: Sink configuration dictionary
        """
        self.config = config
        self.name = config.get('name', self.__class__.__name__)
        self.base_url = config['base_url']
        self.auth_config = config.get('auth', {}) or {}
        self.verify_ssl = config.get('verify_ssl', True)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers: Dict[str, str] = {}
        self._token_expires_at: Optional[float] = None

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up the TLS context for https sinks."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_file = self.config.get('ca_cert_file')
        if ca_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_file)
                logger.info(f"Loaded CA certificates for {self.name}: {ca_file}")
            except (OSError, ssl.SSLError) as e:
                raise SinkAPIError(f"Failed to load CA certificates {ca_file}: {e}")

        cert_file = self.config.get('client_cert_file')
        if cert_file:
            try:
                self.ssl_context.load_cert_chain(cert_file, self.config.get('client_key_file'))
                logger.info(f"Loaded client certificate for {self.name}: {cert_file}")
            except (OSError, ssl.SSLError) as e:
                raise SinkAPIError(f"Failed to load client certificate {cert_file}: {e}")

    def _setup_authentication(self):
        """Build authentication headers from the auth configuration."""
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if username and password:
                credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
                self.auth_headers['Authorization'] = f"Basic {credentials}"
            else:
                logger.error(f"Basic auth configured but missing username or password for {self.name}")

        elif auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"Bearer {token}"
            else:
                logger.error(f"Token auth configured but missing token for {self.name}")

        elif auth_method == 'oauth2':
            missing = [k for k in ('client_id', 'client_secret', 'token_url') if not self.auth_config.get(k)]
            if missing:
                logger.error(f"OAuth2 auth for {self.name} missing {', '.join(missing)}")

        elif auth_method:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")

    def _oauth2_get_token(self) -> bool:
        """Fetch an access token with the client-credentials grant."""
        token_url = urlparse(self.auth_config.get('token_url', ''))
        if not token_url.netloc:
            logger.error(f"OAuth2 token_url missing or invalid for {self.name}")
            return False

        form = {
            'grant_type': 'client_credentials',
            'client_id': self.auth_config.get('client_id'),
            'client_secret': self.auth_config.get('client_secret'),
        }
        if self.auth_config.get('scope'):
            form['scope'] = self.auth_config['scope']

        if token_url.scheme == 'https':
            conn = HTTPSConnection(token_url.netloc, context=self.ssl_context, timeout=self.timeout)
        else:
            conn = HTTPConnection(token_url.netloc, timeout=self.timeout)

        try:
            conn.request('POST', token_url.path or '/', urlencode(form), {
                'Content-Type': 'application/x-www-form-urlencoded',
                'Accept': 'application/json',
            })
            response = conn.getresponse()
            payload = response.read().decode('utf-8')
            if response.status != 200:
                logger.error(f"OAuth2 token request failed for {self.name}: {response.status} {response.reason}")
                return False

            token_response = json.loads(payload)
            access_token = token_response.get('access_token')
            if not access_token:
                logger.error(f"OAuth2 response missing access_token for {self.name}")
                return False

            self.auth_headers['Authorization'] = f"Bearer {access_token}"
            expires_in = token_response.get('expires_in')
            if expires_in:
                self._token_expires_at = time.time() + int(expires_in) - 60
            logger.info(f"Obtained OAuth2 token for {self.name}")
            return True

        except (OSError, ValueError) as e:
            logger.error(f"OAuth2 token request error for {self.name}: {e}")
            return False
        finally:
            conn.close()

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)
        return self.connection

    def request(self, method: str, path: str, body: Optional[Any] = None,
                headers: Optional[Dict[str, str]] = None, raw_body: Optional[bytes] = None) -> Dict[str, Any]:
        """
        Make an HTTP request against the sink API.

        Args:
            method: HTTP method
            path: Path relative to base_url (may include a query string)
            body: JSON-serialisable request body
            headers: Extra headers
            raw_body: Binary body sent as-is (e.g. asset uploads)

        Returns:
            Decoded JSON response (empty dict for empty bodies)

        Raises:
            SinkAuthenticationError: On 401 after any token refresh
            SinkAPIError: On any other failure
        """
        full_path = urljoin(self.base_path + '/', path.lstrip('/'))
        request_headers = {'Accept': 'application/json'}
        request_headers.update(self.auth_headers)
        if headers:
            request_headers.update(headers)

        request_body: Optional[Union[str, bytes]] = raw_body
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        oauth2 = self.auth_config.get('method', '').lower() == 'oauth2'

        for attempt in range(2):
            try:
                conn = self._get_connection()
                logger.debug(f"{method} {self.host}{full_path}")
                conn.request(method, full_path, request_body, request_headers)
                response = conn.getresponse()
                response_data = response.read().decode('utf-8')
            except (ConnectionError, OSError) as e:
                self.close_connection()
                raise SinkAPIError(f"Connection error to {self.name}: {e}")

            if response.status == 401:
                if oauth2 and attempt == 0 and self._oauth2_get_token():
                    request_headers.update(self.auth_headers)
                    continue
                raise SinkAuthenticationError(f"Authentication failed for {self.name}", 401)

            if response.status >= 400:
                raise SinkAPIError(f"HTTP {response.status} from {self.name}: {response.reason} "
                                   f"{response_data[:200]}", response.status)

            try:
                return json.loads(response_data) if response_data else {}
            except json.JSONDecodeError as e:
                raise SinkAPIError(f"Invalid JSON response from {self.name}: {e}")

        raise SinkAuthenticationError(f"Authentication failed for {self.name}", 401)

    def close_connection(self):
        """Close the HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    def authenticate(self) -> bool:
        """
        Perform any authentication round-trip needed before use.

        Only OAuth2 needs one; static credentials are set up in the constructor.
        """
        method = self.auth_config.get('method', '').lower()
        if method == 'oauth2':
            if self._token_expires_at and time.time() < self._token_expires_at:
                return True
            return self._oauth2_get_token()
        return method in ('', 'basic', 'token', 'bearer')

    def test_connection(self) -> bool:
        """Check that the sink can be listed."""
        try:
            self.list_existing()
            return True
        except SinkAPIError as e:
            logger.debug(f"Sink connection test failed for {self.name}: {e}")
            return False

    @abstractmethod
    def list_existing(self) -> List[ExistingRecord]:
        """Return every record currently stored in the sink."""

    @abstractmethod
    def create(self, record: ProfileRecord) -> None:
        """Create the record; must be safe to retry."""

    @abstractmethod
    def update(self, identity: str, record: ProfileRecord) -> None:
        """Overwrite the record stored under `identity`."""

    @abstractmethod
    def delete(self, identity: str) -> None:
        """Delete the record stored under `identity`."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()
