"""
LDAP directory source.

Reads member entries with a paged subtree search and maps directory
attributes onto raw roster entries. Useful when the organisation directory
lives in Active Directory or OpenLDAP rather than a chat workspace.
"""

import ssl
import logging
from typing import Dict, List, Any, Optional

from ldap3 import Server, Connection, SUBTREE, Tls
from ldap3.core.results import RESULT_SUCCESS
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError

from roster_sync.retry import MaxRetriesExceeded, retry_call, create_retry_callback
from .base import SourceAdapterBase, SourceError

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

# Roster entry field -> candidate directory attributes, first non-empty wins
DEFAULT_ATTRIBUTE_MAP = {
    'name': ['displayName', 'cn'],
    'email': ['mail'],
    'title': ['title'],
    'image_ref': ['labeledURI'],
    'source_id': ['uid', 'sAMAccountName'],
    'username': ['sAMAccountName', 'uid'],
}


class LDAPDirectorySource(SourceAdapterBase):
    """
    LDAP source.

    Configuration keys:
        server_url, bind_dn, bind_password: Connection and credentials
        user_base_dn: Search base
        user_filter: Filter for member entries (default "(objectClass=person)")
        group_dn: Optional group; only its members (memberOf) are read
        attribute_map: Overrides of DEFAULT_ATTRIBUTE_MAP
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.server_url = config['server_url']
        self.bind_dn = config.get('bind_dn')
        self.bind_password = config.get('bind_password')
        self.user_base_dn = config.get('user_base_dn', '')
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.group_dn = config.get('group_dn')
        self.page_size = config.get('page_size', 500)

        self.attribute_map = dict(DEFAULT_ATTRIBUTE_MAP)
        for field, attrs in (config.get('attribute_map') or {}).items():
            self.attribute_map[field] = [attrs] if isinstance(attrs, str) else list(attrs)

        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.max_retries = config.get('max_retries', 3)
        self.retry_wait = config.get('retry_wait_seconds', 5)

        self.connection = None

    @property
    def search_filter(self) -> str:
        if self.group_dn:
            return f"(&{self.user_filter}(memberOf={self.group_dn}))"
        return self.user_filter

    @property
    def requested_attributes(self) -> List[str]:
        return sorted({attr for attrs in self.attribute_map.values() for attr in attrs})

    def connect(self) -> None:
        """Open and bind the connection, retrying socket and bind failures."""
        if self.connection is not None:
            return

        server = Server(self.server_url, use_ssl=self.use_ssl, tls=self._create_tls_config(),
                        connect_timeout=self.connection_timeout)
        try:
            self.connection = retry_call(
                self._bind, (server,),
                max_attempts=self.max_retries,
                delay=self.retry_wait,
                exceptions=(LDAPSocketOpenError, LDAPBindError),
                on_retry=create_retry_callback(f"LDAP bind to {self.server_url}"),
            )
        except MaxRetriesExceeded as e:
            raise SourceError(f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}")
        except LDAPException as e:
            raise SourceError(f"LDAP connection error: {e}")

        logger.info(f"Connected and bound to LDAP server {self.server_url}")

    def _bind(self, server: Server) -> Connection:
        connection = Connection(server, user=self.bind_dn, password=self.bind_password,
                                auto_bind=False, receive_timeout=self.receive_timeout)
        if not connection.open():
            raise LDAPSocketOpenError(f"Failed to open connection: {connection.result}")
        if self.start_tls and not self.use_ssl and not connection.start_tls():
            raise LDAPException(f"Failed to start TLS: {connection.result}")
        if not connection.bind():
            raise LDAPBindError(f"Bind failed: {connection.result}")
        return connection

    def _create_tls_config(self) -> Optional[Tls]:
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config: Dict[str, Any] = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("LDAP certificate verification disabled")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
        return Tls(**tls_config)

    def list_entries(self) -> List[Dict[str, Any]]:
        self.connect()

        entries: List[Dict[str, Any]] = []
        cookie = None
        page = 0
        try:
            while True:
                success = self.connection.search(
                    search_base=self.user_base_dn,
                    search_filter=self.search_filter,
                    search_scope=SUBTREE,
                    attributes=self.requested_attributes,
                    paged_size=self.page_size,
                    paged_cookie=cookie,
                )
                # search() is also False for an empty result set, so go by the result code
                result_code = (self.connection.result or {}).get('result', 0 if success else None)
                if result_code != RESULT_SUCCESS:
                    raise SourceError(f"LDAP search failed on page {page + 1}: {self.connection.result}")

                page += 1
                entries.extend(self.entry_to_roster(entry) for entry in self.connection.entries)
                logger.debug(f"LDAP page {page}: {len(entries)} entries so far")

                cookie = self._next_cookie()
                if not cookie:
                    break
        except LDAPException as e:
            raise SourceError(f"LDAP search failed: {e}")

        logger.info(f"Retrieved {len(entries)} directory entries across {page} pages")
        return entries

    def _next_cookie(self) -> Optional[bytes]:
        controls = (self.connection.result or {}).get('controls') or {}
        control = controls.get(PAGED_RESULTS_OID) or {}
        return (control.get('value') or {}).get('cookie') or None

    def entry_to_roster(self, entry) -> Dict[str, Any]:
        attributes = entry.entry_attributes_as_dict
        roster_entry: Dict[str, Any] = {}
        for field, candidates in self.attribute_map.items():
            roster_entry[field] = None
            for attr in candidates:
                values = attributes.get(attr) or []
                if values and values[0]:
                    roster_entry[field] = str(values[0])
                    break
        return roster_entry

    def test_connection(self) -> bool:
        try:
            self.connect()
            return self.connection.search(search_base='', search_filter='(objectClass=*)',
                                          search_scope='BASE', attributes=['namingContexts'])
        except (SourceError, LDAPException) as e:
            logger.error(f"LDAP connection test failed: {e}")
            return False

    def close(self) -> None:
        if self.connection is None:
            return
        try:
            self.connection.unbind()
            logger.debug("LDAP connection closed")
        except LDAPException as e:
            logger.warning(f"Error closing LDAP connection: {e}")
        finally:
            self.connection = None
